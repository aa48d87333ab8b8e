"""Disk size helpers. Every helper returns a size in 512-byte sectors."""

from dmstack.constants import SECTOR_SIZE


def sectors(n: int) -> int:
    return n


def kilo(n: int) -> int:
    return n * 2


def meg(n: int) -> int:
    return n * 2 * 1024


def gig(n: int) -> int:
    return n * 2 * 1024 * 1024


def to_bytes(sector_count: int) -> int:
    return sector_count * SECTOR_SIZE


def from_bytes(nbytes: int) -> int:
    """Whole sectors covered by nbytes (rounded down)."""
    return nbytes // SECTOR_SIZE
