"""Message bus module for decoupled channel-agent communication."""

from sportello.bus.events import InboundMessage, OutboundMessage
from sportello.bus.queue import MessageBus

__all__ = ["MessageBus", "InboundMessage", "OutboundMessage"]
