"""Message bus module for decoupled channel-agent communication."""

from crabgate.bus.events import Direction, Envelope
from crabgate.bus.queue import OUTBOUND_TOPIC, WILDCARD, MessageBus, Subscription

__all__ = ["MessageBus", "Subscription", "Envelope", "Direction", "OUTBOUND_TOPIC", "WILDCARD"]
