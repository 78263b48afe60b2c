"""Transport bridges connecting sessions to external chat networks."""

from switchboard.bridges.base import BridgeContext, BridgeStatus, TransportBridge

__all__ = ["BridgeContext", "BridgeStatus", "TransportBridge"]
