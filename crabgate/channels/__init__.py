"""Chat channels module with plugin architecture."""

from crabgate.channels.base import BaseChannel
from crabgate.channels.manager import ChannelManager

__all__ = ["BaseChannel", "ChannelManager"]
