"""Validation and normalization of raw match reports."""

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Optional

from dedup import WINNER_UNKNOWN, MatchRecord, PlayerRecord, parse_instant

log = logging.getLogger(__name__)

# Rejection reasons, in the order the checks run
MALFORMED_SHAPE = 'MALFORMED_SHAPE'
UNPARSABLE_TIMESTAMP = 'UNPARSABLE_TIMESTAMP'
MISSING_PLAYER_FIELD = 'MISSING_PLAYER_FIELD'
INVALID_DECK_LENGTH = 'INVALID_DECK_LENGTH'

REJECTION_REASONS = (
    MALFORMED_SHAPE,
    UNPARSABLE_TIMESTAMP,
    MISSING_PLAYER_FIELD,
    INVALID_DECK_LENGTH,
)

DECK_LENGTH = 16


@dataclass(frozen=True)
class ValidationResult:
    """Either a canonical record or the reason it was rejected."""

    record: Optional[MatchRecord] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.record is not None


def _reject(reason: str) -> ValidationResult:
    return ValidationResult(reason=reason)


def _as_int(value: Any, default: int = 0) -> int:
    """Coerce leniently: bools, numbers and numeric strings, else default."""
    if value is None or isinstance(value, (dict, list)):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default


def _as_float(value: Any, default: float = 0.0) -> float:
    if value is None or isinstance(value, (dict, list)):
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    return result if math.isfinite(result) else default


def _as_str(value: Any, default: str = '') -> str:
    if value is None or isinstance(value, (dict, list)):
        return default
    return str(value)


def _has_text(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ''


def _build_player(raw: dict) -> PlayerRecord:
    return PlayerRecord(
        tag=raw['utag'].strip(),
        deck=raw['deck'],
        tower_skin=raw['tower'].strip(),
        clan_tag=_as_str(raw.get('ctag')),
        trophies=_as_int(raw.get('trophies')),
        experience=_as_int(raw.get('exp')),
        league=_as_int(raw.get('league')),
        best_league=_as_int(raw.get('bestleague')),
        evolution_cards=_as_str(raw.get('evo')),
        strength=_as_float(raw.get('strength')),
        elixir_average=_as_float(raw.get('elixir')),
        crowns_taken=_as_int(raw.get('crown')),
        card_touches=_as_int(raw.get('touch')),
        score=_as_int(raw.get('score')),
    )


def _winner_slot(value: Any) -> int:
    slot = _as_int(value, WINNER_UNKNOWN)
    return slot if slot in (0, 1) else WINNER_UNKNOWN


def validate_match(value: Any, origin: tuple[str, int] = ('', 0)) -> ValidationResult:
    """Validate a parsed JSON value and build its canonical record.

    Checks run in a fixed order and stop at the first failure:

    1. Object shape: ``players`` array of exactly two entries, ``date``,
       ``game``, ``mode`` and ``type`` present; ``date`` must parse.
    2. Every player carries a non-empty ``utag``, a ``deck`` string and a
       non-empty ``tower``.
    3. Every deck is exactly 16 characters long.

    Optional fields fall back to 0 / 0.0 / "" and never cause a rejection.

    Args:
        value: Parsed JSON value, schema not trusted.
        origin: Arrival position ``(shard, line)`` of the report.

    Returns:
        ValidationResult with either ``record`` or ``reason`` set.
    """
    if not isinstance(value, dict):
        return _reject(MALFORMED_SHAPE)

    players = value.get('players')
    if not isinstance(players, list) or len(players) != 2:
        return _reject(MALFORMED_SHAPE)
    if value.get('date') is None:
        return _reject(MALFORMED_SHAPE)
    if not all(_has_text(value.get(name)) for name in ('game', 'mode', 'type')):
        return _reject(MALFORMED_SHAPE)

    timestamp = value['date']
    if not isinstance(timestamp, str):
        return _reject(UNPARSABLE_TIMESTAMP)
    try:
        instant = parse_instant(timestamp)
    except ValueError:
        return _reject(UNPARSABLE_TIMESTAMP)

    for raw in players:
        if not isinstance(raw, dict):
            return _reject(MISSING_PLAYER_FIELD)
        if not _has_text(raw.get('utag')) or not isinstance(raw.get('deck'), str):
            return _reject(MISSING_PLAYER_FIELD)
        if not _has_text(raw.get('tower')):
            return _reject(MISSING_PLAYER_FIELD)

    for raw in players:
        if len(raw['deck']) != DECK_LENGTH:
            return _reject(INVALID_DECK_LENGTH)

    record = MatchRecord(
        timestamp=timestamp.strip(),
        instant=instant,
        game_id=value['game'].strip(),
        mode=value['mode'].strip(),
        type=value['type'].strip(),
        players=tuple(_build_player(raw) for raw in players),
        round=_as_int(value.get('round')),
        winner_slot=_winner_slot(value.get('winner')),
        origin=origin,
    )
    return ValidationResult(record=record)


def validate_line(line: str, origin: tuple[str, int] = ('', 0)) -> Optional[ValidationResult]:
    """Parse and validate one input line.

    Args:
        line: Raw text line (one JSON object).
        origin: Arrival position ``(shard, line)`` of the report.

    Returns:
        ValidationResult, or None for a blank line.
    """
    text = line.strip()
    if not text:
        return None
    try:
        value = json.loads(text)
    except (ValueError, RecursionError):
        result = _reject(MALFORMED_SHAPE)
    else:
        result = validate_match(value, origin)

    if not result.ok:
        log.debug("Zeile %d in %s verworfen: %s", origin[1], origin[0] or '<stdin>', result.reason)
    return result
