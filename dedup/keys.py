"""Grouping keys for candidate duplicates."""

import zlib

from dedup import MatchRecord

KEY_SEPARATOR = '_'


def build_key(record: MatchRecord) -> str:
    """Build the grouping key of a canonical record.

    The key is ``game_mode_round_tagA_tagB`` over the tag-sorted players, so
    both reporting orders of the same match share it. The timestamp is left
    out on purpose: near-simultaneous reports are told apart by the tolerance
    check, not by the key.
    """
    first, second = record.players
    return KEY_SEPARATOR.join(
        (record.game_id, record.mode, str(record.round), first.tag, second.tag)
    )


def partition_for(key: str, partitions: int) -> int:
    """Map a key to a reduce partition, stable across processes and runs."""
    if partitions < 1:
        raise ValueError(f"Anzahl Partitionen muss >= 1 sein, nicht {partitions}")
    return zlib.crc32(key.encode('utf-8')) % partitions
