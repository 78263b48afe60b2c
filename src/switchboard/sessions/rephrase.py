"""One-shot rewrite operations: rephrase a message, make text voice-friendly.

Each call runs a single non-streaming completion and returns the rewritten
text, or None if the runtime failed or produced something unusable.
"""

from __future__ import annotations

from collections.abc import Sequence

from switchboard.logger import logger
from switchboard.runtime import AgentRuntime
from switchboard.types import Message, Session

CONTEXT_MESSAGES = 10
CONTEXT_CHARS = 500
MAX_REPHRASE_CHARS = 10000
MAX_VOICE_CHARS = 50000


def build_context(messages: Sequence[Message]) -> str:
    """Render the last few user/assistant turns, each clipped."""
    turns = [m for m in messages if m.role in ("user", "assistant") and not m.is_intermediate]
    lines = [
        f"{'User' if m.role == 'user' else 'Assistant'}: {m.content[:CONTEXT_CHARS]}"
        for m in turns[-CONTEXT_MESSAGES:]
    ]
    return "\n\n".join(lines)


def build_rephrase_prompt(
    text: str,
    context: str = "",
    mentions: Sequence[str] | None = None,
) -> str:
    parts = [
        "You are a writing assistant. Rephrase the user's message to be clearer, "
        "more specific, and more actionable.",
        "Preserve the original intent completely. Add relevant context from the "
        "conversation if it helps clarify the request.",
        "Do NOT add pleasantries, greetings, or filler. Do NOT explain what you changed.",
        "Reply with ONLY the rephrased message text, nothing else.",
    ]
    if mentions:
        parts += [
            "",
            "IMPORTANT: The user has these data sources and skills available as @mentions:",
            ", ".join(mentions),
            "If the user's message references something that clearly matches one of these "
            "@mentions, INCLUDE the @mention in your rephrased text.",
            "Only tag mentions that are clearly relevant. Do not force-tag unrelated sources.",
        ]
    parts.append("")
    if context:
        parts += ["Conversation context:", context, ""]
    parts += ["Original message to rephrase:", text, "", "Rephrased message:"]
    return "\n".join(parts)


def build_voice_prompt(text: str) -> str:
    return "\n".join(
        [
            "Transform this assistant message for voice/speech synthesis. The user will "
            "hear this read aloud, so optimize for listening.",
            "",
            "Rules:",
            "- Skip URLs entirely, or say \"there's a link\" if context requires it",
            "- For code blocks: briefly describe what the code does instead of reading syntax",
            "- For ASCII diagrams, charts, or tables: describe what they show in natural language",
            "- Use contractions and a conversational tone",
            "- Keep the same meaning and information, just optimized for listening",
            "- If the message is already voice-friendly, return it mostly unchanged",
            "- Do NOT add greetings, sign-offs, or meta-commentary",
            "",
            "Reply with ONLY the transformed text, nothing else.",
            "",
            "Original message:",
            text,
            "",
            "Voice-optimized version:",
        ]
    )


async def _complete(
    runtime: AgentRuntime, prompt: str, *, model: str | None, limit: int, op: str
) -> str | None:
    try:
        result = await runtime.complete(prompt, model=model)
    except Exception as exc:
        logger.warning("Rewrite failed", op=op, err=str(exc))
        return None
    trimmed = result.strip()
    if not trimmed or len(trimmed) >= limit:
        logger.warning("Rewrite produced unusable output", op=op, length=len(trimmed))
        return None
    return trimmed


async def rephrase_text(
    runtime: AgentRuntime,
    text: str,
    *,
    context: Sequence[Message] = (),
    mentions: Sequence[str] | None = None,
    model: str | None = None,
) -> str | None:
    """Rephrase free text, e.g. a selection in an input field."""
    prompt = build_rephrase_prompt(text, build_context(context), mentions)
    return await _complete(runtime, prompt, model=model, limit=MAX_REPHRASE_CHARS, op="rephrase")


async def rephrase_message(
    runtime: AgentRuntime,
    session: Session,
    message_id: str,
    *,
    mentions: Sequence[str] | None = None,
    model: str | None = None,
) -> str | None:
    """Rephrase one of the session's user messages using the turns before it."""
    found = session.find_message(message_id)
    if found is None or found[1].role != "user":
        logger.warning("Rephrase target is not a user message", message_id=message_id)
        return None
    index, target = found
    return await rephrase_text(
        runtime,
        target.content,
        context=session.messages[:index],
        mentions=mentions,
        model=model,
    )


async def transform_for_voice(
    runtime: AgentRuntime, text: str, *, model: str | None = None
) -> str | None:
    prompt = build_voice_prompt(text)
    return await _complete(runtime, prompt, model=model, limit=MAX_VOICE_CHARS, op="voice")
