"""Equivalence of match reports and discrepancy detection."""

from datetime import timedelta

from rapidfuzz.distance import Hamming

from dedup import MatchRecord, PlayerRecord

DEFAULT_TOLERANCE_SECONDS = 10

# A card is two hex characters; one swapped card changes at most two.
NEAR_MATCH_MAX_DECK_DISTANCE = 2

_ONE_SECOND = timedelta(seconds=1)


def elapsed_seconds(a: MatchRecord, b: MatchRecord) -> int:
    """Whole seconds between two reports, fractions truncated."""
    return abs(a.instant - b.instant) // _ONE_SECOND


def within_tolerance(
    a: MatchRecord,
    b: MatchRecord,
    tolerance: float = DEFAULT_TOLERANCE_SECONDS,
) -> bool:
    """Check whether two timestamps lie inside the tolerance window.

    The window is inclusive: with the default of 10 seconds, reports 10 s
    apart are within it and reports 11 s apart are not.
    """
    return elapsed_seconds(a, b) <= tolerance


def same_player(a: PlayerRecord, b: PlayerRecord) -> bool:
    """Compare the fields that identify a player's side of a match."""
    return a.identity == b.identity


def same_header(a: MatchRecord, b: MatchRecord) -> bool:
    return (
        a.game_id == b.game_id
        and a.mode == b.mode
        and a.round == b.round
        and a.type == b.type
    )


def is_same_match(
    a: MatchRecord,
    b: MatchRecord,
    tolerance: float = DEFAULT_TOLERANCE_SECONDS,
) -> bool:
    """Decide whether two reports describe the same real-world match.

    Requires equal game, mode, round and type, equal player pairs (by tag,
    deck, evolution cards and tower skin, in canonical order) and timestamps
    inside the tolerance window. The declared winner is deliberately not
    compared; a disagreement shows up in ``detect_discrepancies`` instead.

    Args:
        a: First canonical record.
        b: Second canonical record.
        tolerance: Maximum timestamp distance in seconds.

    Returns:
        True if both reports are the same match.
    """
    return (
        same_header(a, b)
        and all(same_player(pa, pb) for pa, pb in zip(a.players, b.players))
        and within_tolerance(a, b, tolerance)
    )


def deck_distance(a: PlayerRecord, b: PlayerRecord) -> int:
    """Number of differing deck characters."""
    return Hamming.distance(a.deck, b.deck)


def is_near_duplicate(
    a: MatchRecord,
    b: MatchRecord,
    tolerance: float = DEFAULT_TOLERANCE_SECONDS,
) -> bool:
    """Check for a pair that misses equivalence only by one card.

    Such pairs are most likely the same match with a corrupted deck string.
    They are reported, never merged.
    """
    if is_same_match(a, b, tolerance):
        return False
    if not same_header(a, b) or not within_tolerance(a, b, tolerance):
        return False

    differing = 0
    for pa, pb in zip(a.players, b.players):
        if pa.tag != pb.tag or pa.tower_skin != pb.tower_skin:
            return False
        if pa.evolution_cards != pb.evolution_cards:
            return False
        distance = deck_distance(pa, pb)
        if distance > NEAR_MATCH_MAX_DECK_DISTANCE:
            return False
        if distance:
            differing += 1
    return differing == 1


def detect_discrepancies(kept: MatchRecord, other: MatchRecord) -> list[str]:
    """Detect disagreements between two reports of the same match.

    Args:
        kept: Surviving report.
        other: Report collapsed into ``kept`` (or flagged next to it).

    Returns:
        List of issue codes.
    """
    issues: list[str] = []

    if kept.winner_slot != other.winner_slot:
        issues.append('WINNER_MISMATCH')

    if kept.instant != other.instant:
        issues.append('TIMESTAMP_DRIFT')

    for pk, po in zip(kept.players, other.players):
        if deck_distance(pk, po):
            issues.append('DECK_NEAR_MATCH')
        if pk.crowns_taken != po.crowns_taken:
            issues.append('CROWNS_MISMATCH')
        if pk.trophies != po.trophies:
            issues.append('TROPHIES_MISMATCH')
        if pk.clan_tag != po.clan_tag:
            issues.append('CLAN_MISMATCH')
        if pk.score != po.score:
            issues.append('SCORE_MISMATCH')

    # One code per kind, first occurrence wins
    return list(dict.fromkeys(issues))
