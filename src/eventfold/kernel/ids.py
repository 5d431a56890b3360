"""
ID generation

Command ids are UUIDv7-like (time-ordered) so the command log sorts
naturally. Event ids are UUIDv5 over the command id, which makes them a
pure function of the command: redelivery always yields the same event id.
"""

import secrets
import time
import uuid
from typing import Protocol

# Fixed namespace for deriving event ids from command ids
EVENT_NAMESPACE = uuid.UUID("6f1c2b0e-4d4a-5b8e-9a57-0e7d1f3c2a91")


class IdFactory(Protocol):
    """Protocol for ID generation strategies"""

    def generate(self) -> str:
        """Generate a new unique ID"""
        ...


def generate_id() -> str:
    """
    Generate a UUIDv7-like identifier (time-ordered UUID)

    Format: 8-4-4-4-12 hex characters (36 chars with hyphens)
    First 48 bits: Unix timestamp in milliseconds
    Next 12 bits: Random
    Remaining 62 bits: Random

    Returns:
        Sortable UUID string (e.g., "01908e9a-3b87-7000-8000-123456789abc")
    """
    timestamp_48 = int(time.time() * 1000) & 0xFFFFFFFFFFFF

    rand_12 = secrets.randbits(12)
    rand_62 = secrets.randbits(62)

    # Version 7 (0111) in bits 48-51, variant (10) in bits 64-65
    time_high = (timestamp_48 >> 32) & 0xFFFF
    time_mid = (timestamp_48 >> 16) & 0xFFFF
    time_low = timestamp_48 & 0xFFFF
    version_and_rand = 0x7000 | rand_12
    clock_seq_and_variant = 0x8000 | ((rand_62 >> 48) & 0x3FFF)
    node = rand_62 & 0xFFFFFFFFFFFF

    return (
        f"{time_high:04x}{time_mid:04x}-"
        f"{time_low:04x}-"
        f"{version_and_rand:04x}-"
        f"{clock_seq_and_variant:04x}-"
        f"{node:012x}"
    )


def derive_event_id(command_id: str) -> str:
    """
    Deterministic event id for a command

    Args:
        command_id: Id of the command that caused the event

    Returns:
        UUIDv5 string, identical for every delivery of the same command
    """
    return str(uuid.uuid5(EVENT_NAMESPACE, command_id))


class DefaultIdFactory:
    """Default ID factory using UUIDv7-like generation"""

    def generate(self) -> str:
        return generate_id()


class SequentialIdFactory:
    """Predictable ids for tests: prefix-1, prefix-2, ..."""

    def __init__(self, prefix: str = "cmd") -> None:
        self.prefix = prefix
        self._counter = 0

    def generate(self) -> str:
        self._counter += 1
        return f"{self.prefix}-{self._counter}"


default_id_factory = DefaultIdFactory()
