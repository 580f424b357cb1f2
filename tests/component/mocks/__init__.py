"""
Component Test Mocks

Shared mock implementations for component testing.
These mocks replace real I/O dependencies (NATS).
"""

from .nats_mock import MockEventBus, MockEvent

__all__ = [
    "MockEventBus",
    "MockEvent",
]
