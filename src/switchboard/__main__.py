"""Entry point for `python -m switchboard` / `switchboard`.

Subcommands:
    switchboard             Run the service (default)
    switchboard sessions    List persisted sessions
"""

from __future__ import annotations

import argparse
import asyncio


def _run() -> None:
    from switchboard.app import SwitchboardApp

    app = SwitchboardApp()
    asyncio.run(app.run())


def _sessions() -> None:
    from switchboard.config import get_settings
    from switchboard.event_bus import SessionEventBus
    from switchboard.sessions import SessionStore

    s = get_settings()
    store = SessionStore(s.workspace_root, SessionEventBus())
    ids = store.list_persisted_ids()
    if not ids:
        print(f"No sessions under {s.sessions_dir}")
        return
    for session_id in ids:
        session = store.get(session_id)
        if session is None:
            print(f"{session_id}  (unreadable, quarantined)")
            continue
        labels = ",".join(session.labels) or "-"
        print(
            f"{session.id}  {session.permission_mode:<9}  {session.message_count:>4} msgs  "
            f"[{labels}]  {session.name or ''}"
        )


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="switchboard",
        description="Agent session orchestrator with Telegram/Matrix bridges",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run the service (default)")
    sub.add_parser("sessions", help="List persisted sessions")

    args = parser.parse_args()

    match args.command:
        case "sessions":
            _sessions()
        case _:
            _run()


if __name__ == "__main__":
    main()
