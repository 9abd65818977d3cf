"""Two-phase deduplication engine for match reports sharing a key."""

import json
import logging
from dataclasses import dataclass, field
from typing import Iterable

from dedup import Discrepancy, MatchRecord
from dedup.equality import (
    DEFAULT_TOLERANCE_SECONDS,
    detect_discrepancies,
    is_near_duplicate,
    is_same_match,
)
from dedup.keys import build_key

log = logging.getLogger(__name__)

# Key group states
COLLECTING = 'COLLECTING'
RESOLVED = 'RESOLVED'
EMITTED = 'EMITTED'


class InvalidStateError(RuntimeError):
    """Raised when a key group is used out of order."""


@dataclass
class CollapseResult:
    """Survivors of one collapse pass, plus what was found on the way."""

    survivors: list[MatchRecord]
    discrepancies: list[Discrepancy] = field(default_factory=list)

    @property
    def dropped(self) -> int:
        return sum(1 for d in self.discrepancies if d.kind == 'DUPLICATE')


def collapse(
    key: str,
    records: Iterable[MatchRecord],
    tolerance: float = DEFAULT_TOLERANCE_SECONDS,
) -> CollapseResult:
    """Collapse adjacent duplicates in time order.

    Records are sorted by timestamp (ties by arrival order) and walked with
    a running "last kept" record. A record equivalent to the last kept one
    is dropped; any other record is kept and becomes the new reference.

    Comparing only against the nearest preceding survivor makes the outcome
    independent of input order when equivalence is not transitive: reports
    at 0 s, 9 s and 18 s collapse to two survivors (0 s and 18 s).

    Args:
        key: Grouping key shared by all records.
        records: Canonical records with the same key.
        tolerance: Maximum timestamp distance in seconds.

    Returns:
        CollapseResult with the survivors in time order.
    """
    ordered = sorted(records, key=lambda r: r.sort_key)
    result = CollapseResult(survivors=[])
    last_kept: MatchRecord | None = None

    for record in ordered:
        if last_kept is not None and is_same_match(last_kept, record, tolerance):
            result.discrepancies.append(Discrepancy(
                key=key,
                kept=last_kept,
                other=record,
                kind='DUPLICATE',
                issues=detect_discrepancies(last_kept, record),
            ))
            continue

        if last_kept is not None and is_near_duplicate(last_kept, record, tolerance):
            result.discrepancies.append(Discrepancy(
                key=key,
                kept=last_kept,
                other=record,
                kind='NEAR_DUPLICATE',
                issues=detect_discrepancies(last_kept, record),
            ))

        result.survivors.append(record)
        last_kept = record

    return result


def local_phase(
    key: str,
    records: Iterable[MatchRecord],
    tolerance: float = DEFAULT_TOLERANCE_SECONDS,
) -> CollapseResult:
    """Reduce the records of one key within a single partition.

    Only a volume reduction: duplicates routed to other partitions are
    invisible here, so the survivors still go through ``global_phase``.
    """
    return collapse(key, records, tolerance)


def global_phase(
    key: str,
    records: Iterable[MatchRecord],
    tolerance: float = DEFAULT_TOLERANCE_SECONDS,
) -> CollapseResult:
    """Resolve the final survivors of one key.

    Runs the same collapse over the union of every partition's local
    survivors for ``key``.
    """
    return collapse(key, records, tolerance)


class KeyGroup:
    """Records of one key moving through COLLECTING, RESOLVED and EMITTED.

    A group only ever emits after it was resolved over its complete input,
    and only once.
    """

    def __init__(self, key: str, tolerance: float = DEFAULT_TOLERANCE_SECONDS):
        self.key = key
        self.tolerance = tolerance
        self.state = COLLECTING
        self._records: list[MatchRecord] = []
        self._result: CollapseResult | None = None

    def __len__(self) -> int:
        return len(self._records)

    def add(self, record: MatchRecord) -> None:
        if self.state != COLLECTING:
            raise InvalidStateError(f"Gruppe {self.key} ist bereits {self.state}")
        self._records.append(record)

    def resolve(self, phase=global_phase) -> CollapseResult:
        """Run ``phase`` over the collected records."""
        if self.state != COLLECTING:
            raise InvalidStateError(f"Gruppe {self.key} ist bereits {self.state}")
        self._result = phase(self.key, self._records, self.tolerance)
        self._records = []
        self.state = RESOLVED
        return self._result

    def emit(self) -> list[MatchRecord]:
        if self.state != RESOLVED:
            raise InvalidStateError(
                f"Gruppe {self.key} kann im Zustand {self.state} nicht ausgegeben werden"
            )
        self.state = EMITTED
        return list(self._result.survivors)


def group_by_key(
    records: Iterable[MatchRecord],
    tolerance: float = DEFAULT_TOLERANCE_SECONDS,
) -> dict[str, KeyGroup]:
    """Collect records into key groups, keyed in first-seen order."""
    groups: dict[str, KeyGroup] = {}
    for record in records:
        key = build_key(record)
        group = groups.get(key)
        if group is None:
            group = groups[key] = KeyGroup(key, tolerance)
        group.add(record)
    return groups


def deduplicate(
    records: Iterable[MatchRecord],
    tolerance: float = DEFAULT_TOLERANCE_SECONDS,
) -> tuple[dict[str, list[MatchRecord]], list[Discrepancy]]:
    """Run the Global Phase over an in-memory set of records.

    Args:
        records: Canonical records in arrival order.
        tolerance: Maximum timestamp distance in seconds.

    Returns:
        Tuple of (survivors per key in sorted key order, discrepancies).
    """
    groups = group_by_key(records, tolerance)
    survivors: dict[str, list[MatchRecord]] = {}
    discrepancies: list[Discrepancy] = []

    for key in sorted(groups):
        group = groups[key]
        discrepancies.extend(group.resolve(global_phase).discrepancies)
        survivors[key] = group.emit()

    log.info(
        "Deduplizierung abgeschlossen: %d Schluessel, %d Matches behalten",
        len(survivors),
        sum(len(s) for s in survivors.values()),
    )
    return survivors, discrepancies


def encode_output(record: MatchRecord, key: str, with_id: bool = True) -> str:
    """Serialize a surviving record as one output line (without newline)."""
    payload = record.to_dict()
    if with_id:
        payload = {'id': key, **payload}
    return json.dumps(payload, ensure_ascii=False, allow_nan=False)
