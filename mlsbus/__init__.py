"""Tails the MLS relay's JSON-lines event log and delivers each chat message once."""

from mlsbus.bus import BusHandle, start_bus
from mlsbus.models import InboundMessage

__all__ = ["BusHandle", "InboundMessage", "start_bus"]
