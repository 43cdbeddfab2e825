"""Base channel interface for chat platforms."""

from abc import ABC, abstractmethod
from typing import Any

from loguru import logger

from crabgate.bus.events import Envelope
from crabgate.bus.queue import MessageBus


class BaseChannel(ABC):
    """
    Abstract base class for chat channel implementations.

    Each channel (Telegram, Discord, etc.) should implement this interface
    to integrate with the crabgate message bus.
    """

    name: str = "base"

    def __init__(self, config: Any, bus: MessageBus):
        """
        Initialize the channel.

        Args:
            config: Channel-specific configuration.
            bus: The message bus for communication.
        """
        self.config = config
        self.bus = bus
        self._running = False

    @abstractmethod
    async def start(self) -> None:
        """
        Start the channel and begin listening for messages.

        This should be a long-running async task that:
        1. Connects to the chat platform
        2. Listens for incoming messages
        3. Forwards messages to the bus via _handle_message()
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the channel and clean up resources."""
        pass

    @abstractmethod
    async def send(self, envelope: Envelope) -> None:
        """
        Deliver an outbound envelope through this channel.

        Args:
            envelope: The message to send; ``chat_id`` names the recipient.
        """
        pass

    def is_allowed(self, sender_id: str) -> bool:
        """
        Check if a sender is allowed to use this bot.

        An empty or missing ``allow_from`` list allows everyone.
        """
        allow_list = getattr(self.config, "allow_from", None) or []
        if not allow_list:
            return True

        sender_str = str(sender_id)
        if sender_str in allow_list:
            return True
        # Composite ids like "12345|username"
        return any(part and part in allow_list for part in sender_str.split("|"))

    async def _handle_message(
        self,
        sender_id: str,
        chat_id: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """
        Handle an incoming message from the chat platform.

        Checks permissions and publishes an inbound envelope on the bus.
        """
        if not self.is_allowed(sender_id):
            logger.warning(
                "Access denied for sender {} on channel {}. Add them to allowFrom list in config to grant access.",
                sender_id, self.name,
            )
            return

        await self.bus.publish_inbound(Envelope.inbound(
            channel=self.name,
            chat_id=str(chat_id),
            text=content,
            sender=str(sender_id),
            metadata=metadata or {},
        ))

    @property
    def is_running(self) -> bool:
        """Check if the channel is running."""
        return self._running
