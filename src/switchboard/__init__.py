"""Switchboard: agent session orchestration and chat transport bridges."""

__version__ = "0.1.0"
