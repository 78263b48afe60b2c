"""Remote control of sessions: protocol, subscriptions and the MCP tool surface."""

from switchboard.control.protocol import ControlResult, SessionControl
from switchboard.control.subscriptions import Subscription, SubscriptionManager

__all__ = ["ControlResult", "SessionControl", "Subscription", "SubscriptionManager"]
