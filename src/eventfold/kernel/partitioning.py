"""
Partition routing

Every command and event for a resource must land on the same partition,
since per-partition sequential consumption is what orders a resource's
history. Python's hash() is salted per process, so a SHA-256 digest is
used instead.
"""

import hashlib


def partition_for(key: str, partitions: int) -> int:
    """
    Stable partition for a key

    Args:
        key: Resource id
        partitions: Number of partitions in the log

    Returns:
        Partition number in [0, partitions)
    """
    if partitions < 1:
        raise ValueError("partitions must be >= 1")
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % partitions
