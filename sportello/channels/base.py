"""Base channel interface for chat platforms."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from loguru import logger

from sportello.bus.events import InboundMessage, OutboundMessage
from sportello.bus.queue import MessageBus
from sportello.cache.conversation import Turn


class BaseChannel(ABC):
    """
    Abstract base class for chat channel implementations.

    A channel pushes inbound messages onto the bus, delivers outbound ones,
    and serves recent history for the conversation cache.
    """

    name: str = "base"

    def __init__(self, config: Any, bus: MessageBus):
        self.config = config
        self.bus = bus
        self._running = False

    @abstractmethod
    async def start(self) -> None:
        """Start listening. Should run until stopped."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the channel and release resources."""
        pass

    @abstractmethod
    async def send(self, msg: OutboundMessage) -> None:
        """Deliver a message. `metadata["out_of_band"]` marks a reply sent outside the reply window."""
        pass

    async def fetch_history(self, chat_id: str, limit: int) -> list[Turn]:
        """Most recent turns of a conversation, oldest first."""
        return []

    async def edit(self, chat_id: str, message_id: str, content: str) -> None:
        """Replace the text of a previously sent message. Falls back to a new message."""
        await self.send(OutboundMessage(channel=self.name, chat_id=chat_id, content=content))

    def is_allowed(self, sender_id: str) -> bool:
        """Check a sender against the channel's `allow_from` list; empty allows everyone."""
        allow_list = getattr(self.config, "allow_from", None) or []
        if not allow_list or "*" in allow_list:
            return True
        return str(sender_id) in allow_list

    async def _handle_message(
        self,
        sender_id: str,
        chat_id: str,
        content: str,
        message_id: str = "",
        metadata: dict[str, Any] | None = None,
        session_key: str | None = None,
    ) -> None:
        """Check permissions and forward a message to the bus."""
        if not self.is_allowed(sender_id):
            logger.warning("Access denied for sender {} on channel {}", sender_id, self.name)
            return

        await self.bus.publish_inbound(InboundMessage(
            channel=self.name,
            sender_id=str(sender_id),
            chat_id=str(chat_id),
            content=content,
            message_id=message_id,
            metadata=metadata or {},
            session_key_override=session_key,
        ))

    @property
    def is_running(self) -> bool:
        """Check if the channel is running."""
        return self._running
