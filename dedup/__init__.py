"""Core module for match-dedup."""

from dataclasses import astuple, dataclass, field
from datetime import datetime, timezone

WINNER_UNKNOWN = -1


def parse_instant(value: str) -> datetime:
    """Parse an ISO-8601 instant into an aware UTC datetime.

    A trailing ``Z`` is accepted. Timestamps without an offset are not
    instants and are rejected.

    Args:
        value: Timestamp string as reported.

    Returns:
        Timezone-aware datetime in UTC.

    Raises:
        ValueError: If the value is not an ISO-8601 instant.
    """
    text = value.strip()
    if text.endswith(('Z', 'z')):
        text = text[:-1] + '+00:00'
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        raise ValueError(f"Zeitstempel ohne Zeitzone: {value!r}")
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class PlayerRecord:
    """One side of a match, as reported."""

    tag: str
    deck: str                 # 8 cards, 2 hex characters each
    tower_skin: str
    clan_tag: str = ''
    trophies: int = 0
    experience: int = 0
    league: int = 0
    best_league: int = 0
    evolution_cards: str = ''
    strength: float = 0.0
    elixir_average: float = 0.0
    crowns_taken: int = 0
    card_touches: int = 0
    score: int = 0

    @property
    def identity(self) -> tuple[str, str, str, str]:
        """Fields that identify this side of a match."""
        return (self.tag, self.deck, self.evolution_cards, self.tower_skin)

    def to_dict(self) -> dict:
        """Encode using the wire field names."""
        return {
            'utag': self.tag,
            'ctag': self.clan_tag,
            'trophies': self.trophies,
            'exp': self.experience,
            'league': self.league,
            'bestleague': self.best_league,
            'deck': self.deck,
            'evo': self.evolution_cards,
            'tower': self.tower_skin,
            'strength': self.strength,
            'crown': self.crowns_taken,
            'elixir': self.elixir_average,
            'touch': self.card_touches,
            'score': self.score,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'PlayerRecord':
        """Decode a payload previously produced by ``to_dict``."""
        return cls(
            tag=data['utag'],
            deck=data['deck'],
            tower_skin=data['tower'],
            clan_tag=data.get('ctag', ''),
            trophies=data.get('trophies', 0),
            experience=data.get('exp', 0),
            league=data.get('league', 0),
            best_league=data.get('bestleague', 0),
            evolution_cards=data.get('evo', ''),
            strength=data.get('strength', 0.0),
            elixir_average=data.get('elixir', 0.0),
            crowns_taken=data.get('crown', 0),
            card_touches=data.get('touch', 0),
            score=data.get('score', 0),
        )


@dataclass(frozen=True)
class MatchRecord:
    """A validated match report with its players in canonical order.

    ``origin`` is the arrival position ``(shard, line)`` of the report. It is
    only used to break timestamp ties and is neither compared nor encoded.
    """

    timestamp: str
    instant: datetime
    game_id: str
    mode: str
    type: str
    players: tuple[PlayerRecord, PlayerRecord]
    round: int = 0
    winner_slot: int = WINNER_UNKNOWN
    origin: tuple[str, int] = field(default=('', 0), compare=False)

    def __post_init__(self):
        if len(self.players) != 2:
            raise ValueError(f"Ein Match braucht genau 2 Spieler, nicht {len(self.players)}")
        # Identity first, remaining fields only to settle full ties
        ordered = tuple(sorted(self.players, key=lambda p: (p.identity, astuple(p))))
        if ordered != tuple(self.players):
            object.__setattr__(self, 'players', ordered)

    @property
    def sort_key(self) -> tuple[datetime, tuple[str, int]]:
        """Timestamp ascending, ties broken by arrival order."""
        return (self.instant, self.origin)

    def to_dict(self) -> dict:
        """Encode using the wire field names, players in canonical order."""
        return {
            'date': self.timestamp,
            'game': self.game_id,
            'mode': self.mode,
            'round': self.round,
            'type': self.type,
            'winner': self.winner_slot,
            'players': [p.to_dict() for p in self.players],
        }

    @classmethod
    def from_dict(cls, data: dict, origin: tuple[str, int] = ('', 0)) -> 'MatchRecord':
        """Decode a payload previously produced by ``to_dict``.

        Untrusted input goes through ``dedup.validator`` instead.
        """
        return cls(
            timestamp=data['date'],
            instant=parse_instant(data['date']),
            game_id=data['game'],
            mode=data['mode'],
            type=data['type'],
            players=tuple(PlayerRecord.from_dict(p) for p in data['players']),
            round=data.get('round', 0),
            winner_slot=data.get('winner', WINNER_UNKNOWN),
            origin=tuple(origin),
        )


@dataclass
class Discrepancy:
    """Data-quality finding between two reports of the same key."""

    key: str
    kept: MatchRecord
    other: MatchRecord
    kind: str                 # DUPLICATE, NEAR_DUPLICATE
    issues: list[str] = field(default_factory=list)
