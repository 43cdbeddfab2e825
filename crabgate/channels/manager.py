"""Channel manager for coordinating chat channels."""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from crabgate.bus.queue import OUTBOUND_TOPIC, MessageBus, Subscription
from crabgate.channels.base import BaseChannel
from crabgate.config.schema import ChannelsConfig


class ChannelManager:
    """
    Manages chat channels and coordinates message routing.

    Responsibilities:
    - Hold the enabled channels by name
    - Start/stop channels
    - Route outbound envelopes to the channel they are addressed to
    """

    def __init__(self, bus: MessageBus, config: ChannelsConfig | None = None):
        self.bus = bus
        self.config = config or ChannelsConfig()
        self.channels: dict[str, BaseChannel] = {}
        self._subscription: Subscription | None = None
        self._dispatch_task: asyncio.Task | None = None
        self._channel_tasks: list[asyncio.Task] = []

    def register(self, channel: BaseChannel) -> None:
        """Add a channel adapter. Names must be unique."""
        if channel.name in self.channels:
            raise ValueError(f"Channel '{channel.name}' already registered")
        self.channels[channel.name] = channel
        logger.info("{} channel enabled", channel.name)

    async def _start_channel(self, name: str, channel: BaseChannel) -> None:
        """Start a channel and log any exceptions."""
        try:
            await channel.start()
        except Exception as e:
            logger.error("Failed to start channel {}: {}", name, e)

    async def start_all(self) -> None:
        """Start the outbound dispatcher and all channels (channels run in the background)."""
        if self._dispatch_task is None:
            self._subscription = self.bus.subscribe(OUTBOUND_TOPIC)
            self._dispatch_task = asyncio.create_task(self._dispatch_outbound(), name="outbound-dispatch")

        if not self.channels:
            logger.warning("No channels enabled")
            return

        for name, channel in self.channels.items():
            logger.info("Starting {} channel...", name)
            self._channel_tasks.append(
                asyncio.create_task(self._start_channel(name, channel), name=f"channel:{name}")
            )

    async def stop_all(self) -> None:
        """Stop all channels and the dispatcher."""
        logger.info("Stopping all channels...")

        if self._subscription:
            self._subscription.close()
            self._subscription = None
        if self._dispatch_task:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
            self._dispatch_task = None

        for name, channel in self.channels.items():
            try:
                await channel.stop()
                logger.info("Stopped {} channel", name)
            except Exception as e:
                logger.error("Error stopping {}: {}", name, e)

        for task in self._channel_tasks:
            task.cancel()
        await asyncio.gather(*self._channel_tasks, return_exceptions=True)
        self._channel_tasks.clear()

    async def _dispatch_outbound(self) -> None:
        """Dispatch outbound envelopes to the appropriate channel."""
        logger.info("Outbound dispatcher started")

        async for envelope in self._subscription:
            if envelope.metadata.get("_progress"):
                if envelope.metadata.get("_tool_hint") and not self.config.send_tool_hints:
                    continue
                if not envelope.metadata.get("_tool_hint") and not self.config.send_progress:
                    continue

            channel = self.channels.get(envelope.channel)
            if channel is None:
                logger.warning("Unknown channel: {}", envelope.channel)
                continue
            try:
                await channel.send(envelope)
            except Exception as e:
                logger.error("Error sending to {}: {}", envelope.channel, e)

    def get_channel(self, name: str) -> BaseChannel | None:
        """Get a channel by name."""
        return self.channels.get(name)

    def get_status(self) -> dict[str, Any]:
        """Get status of all channels."""
        return {
            name: {
                "enabled": True,
                "running": channel.is_running
            }
            for name, channel in self.channels.items()
        }

    @property
    def enabled_channels(self) -> list[str]:
        """Get list of enabled channel names."""
        return list(self.channels.keys())
