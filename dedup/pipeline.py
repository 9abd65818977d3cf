"""Local map / group-by-key / reduce runner around the dedup engine."""

import json
import logging
import os
import shutil
from collections import Counter
from dataclasses import dataclass, field
from multiprocessing import Pool
from pathlib import Path
from typing import Callable, Sequence, TextIO

from dedup import Discrepancy, MatchRecord
from dedup.engine import encode_output, global_phase, group_by_key, local_phase
from dedup.equality import DEFAULT_TOLERANCE_SECONDS
from dedup.keys import partition_for
from dedup.validator import MALFORMED_SHAPE, validate_line

log = logging.getLogger(__name__)

DEFAULT_PARTITIONS = 4
DEFAULT_WORKERS = 1

STAGING_DIR = '_temporary'
SUCCESS_MARKER = '_SUCCESS'


class PipelineError(RuntimeError):
    """Input or output location cannot be used for a run."""


@dataclass(frozen=True)
class RunConfig:
    """Tunables of a run, passed explicitly to every task."""

    tolerance: float = DEFAULT_TOLERANCE_SECONDS
    partitions: int = DEFAULT_PARTITIONS
    workers: int = DEFAULT_WORKERS
    with_id: bool = True
    # Keep every finding in RunStats.discrepancies (needed for reports only)
    collect_discrepancies: bool = False


@dataclass
class RunStats:
    """Counters of a task or of a whole run."""

    shards: int = 0
    lines: int = 0
    valid: int = 0
    rejected: Counter = field(default_factory=Counter)
    local_dropped: int = 0
    global_dropped: int = 0
    keys: int = 0
    emitted: int = 0
    near_duplicates: int = 0
    issues: Counter = field(default_factory=Counter)
    discrepancies: list[Discrepancy] = field(default_factory=list)

    @property
    def rejected_total(self) -> int:
        return sum(self.rejected.values())

    def merge(self, other: 'RunStats') -> None:
        self.shards += other.shards
        self.lines += other.lines
        self.valid += other.valid
        self.rejected.update(other.rejected)
        self.local_dropped += other.local_dropped
        self.global_dropped += other.global_dropped
        self.keys += other.keys
        self.emitted += other.emitted
        self.near_duplicates += other.near_duplicates
        self.issues.update(other.issues)
        self.discrepancies.extend(other.discrepancies)


def discover_shards(input_path: Path) -> list[Path]:
    """List the input shards of a run.

    A file is a single shard. In a directory every regular file is a shard,
    except hidden files and files starting with ``_`` (markers such as
    ``_SUCCESS``), in sorted name order.

    Raises:
        PipelineError: If the input path does not exist.
    """
    input_path = Path(input_path)
    if input_path.is_file():
        return [input_path]
    if not input_path.is_dir():
        raise PipelineError(f"Eingabe {input_path} existiert nicht.")
    return sorted(
        p for p in input_path.iterdir()
        if p.is_file() and not p.name.startswith(('_', '.'))
    )


def prepare_output(output_path: Path) -> Path:
    """Create the output directory, refusing to overwrite an earlier run.

    Raises:
        PipelineError: If the path is a file or a non-empty directory.
    """
    output_path = Path(output_path)
    if output_path.exists():
        if not output_path.is_dir():
            raise PipelineError(f"Ausgabe {output_path} ist kein Verzeichnis.")
        if any(output_path.iterdir()):
            raise PipelineError(f"Ausgabeverzeichnis {output_path} ist nicht leer.")
    try:
        output_path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise PipelineError(f"Ausgabeverzeichnis {output_path} nicht anlegbar: {exc}") from exc
    return output_path


def _spill_path(staging: Path, shard_index: int, partition: int) -> Path:
    return staging / f"map-{shard_index:05d}-part-{partition:05d}.jsonl"


def _output_name(partition: int) -> str:
    return f"part-{partition:05d}.jsonl"


def _record_findings(
    stats: RunStats, discrepancies: list[Discrepancy], final: bool, collect: bool,
) -> None:
    """Count findings of one collapse pass, keeping them only if asked to.

    Near duplicates survive the Local Phase and are found again by the
    Global Phase, so they are only taken from the final pass.
    """
    for d in discrepancies:
        if d.kind == 'NEAR_DUPLICATE':
            if not final:
                continue
            stats.near_duplicates += 1
        stats.issues.update(d.issues)
        if collect:
            stats.discrepancies.append(d)


def _read_shard(shard: Path, stats: RunStats) -> list[MatchRecord]:
    records: list[MatchRecord] = []
    with open(shard, 'rb') as f:
        for line_no, raw in enumerate(f, start=1):
            stats.lines += 1
            try:
                line = raw.decode('utf-8')
            except UnicodeDecodeError:
                log.debug("Zeile %d in %s ist kein UTF-8", line_no, shard)
                stats.rejected[MALFORMED_SHAPE] += 1
                continue
            if line_no == 1:
                # Strip BOM if present
                line = line.lstrip('\ufeff')

            result = validate_line(line, origin=(shard.name, line_no))
            if result is None:
                continue
            if result.ok:
                records.append(result.record)
            else:
                stats.rejected[result.reason] += 1
    stats.valid += len(records)
    return records


def map_shard(shard_index: int, shard: Path, staging: Path, config: RunConfig) -> RunStats:
    """Validate one shard, run the Local Phase and spill by partition.

    Args:
        shard_index: Position of the shard in the run.
        shard: Input file.
        staging: Directory receiving the spill files.
        config: Run configuration.

    Returns:
        Counters of this map task.
    """
    shard = Path(shard)
    stats = RunStats(shards=1)
    records = _read_shard(shard, stats)
    groups = group_by_key(records, config.tolerance)

    handles: dict[int, TextIO] = {}
    try:
        for key, group in groups.items():
            result = group.resolve(local_phase)
            stats.local_dropped += result.dropped
            _record_findings(stats, result.discrepancies, False, config.collect_discrepancies)

            partition = partition_for(key, config.partitions)
            out = handles.get(partition)
            if out is None:
                out = handles[partition] = open(
                    _spill_path(staging, shard_index, partition), 'w', encoding='utf-8',
                )
            for record in group.emit():
                spill = {'origin': list(record.origin), 'match': record.to_dict()}
                out.write(json.dumps(spill, ensure_ascii=False, allow_nan=False) + '\n')
    finally:
        for out in handles.values():
            out.close()

    log.info(
        "%s: %d Zeilen, %d gueltig, %d verworfen, %d lokal zusammengefasst",
        shard.name, stats.lines, stats.valid, stats.rejected_total, stats.local_dropped,
    )
    return stats


def _read_spill(path: Path) -> list[MatchRecord]:
    records: list[MatchRecord] = []
    with open(path, 'r', encoding='utf-8') as f:
        for line in f:
            spill = json.loads(line)
            records.append(MatchRecord.from_dict(spill['match'], origin=spill['origin']))
    return records


def reduce_partition(partition: int, staging: Path, config: RunConfig) -> RunStats:
    """Run the Global Phase over every key of one partition.

    Reads all spill files of the partition, so it must only start once every
    map task has finished. Keys are emitted in sorted order.

    Args:
        partition: Reduce partition number.
        staging: Directory holding the spill files.
        config: Run configuration.

    Returns:
        Counters of this reduce task.
    """
    stats = RunStats()
    records: list[MatchRecord] = []
    for spill in sorted(staging.glob(f"map-*-part-{partition:05d}.jsonl")):
        records.extend(_read_spill(spill))

    groups = group_by_key(records, config.tolerance)
    with open(staging / _output_name(partition), 'w', encoding='utf-8') as out:
        for key in sorted(groups):
            group = groups[key]
            result = group.resolve(global_phase)
            stats.global_dropped += result.dropped
            _record_findings(stats, result.discrepancies, True, config.collect_discrepancies)
            for record in group.emit():
                out.write(encode_output(record, key, config.with_id) + '\n')
                stats.emitted += 1
    stats.keys = len(groups)
    return stats


def _run_tasks(func: Callable[..., RunStats], tasks: Sequence[tuple], workers: int) -> list[RunStats]:
    """Run tasks inline or in a process pool; the first failure propagates."""
    if workers <= 1 or len(tasks) <= 1:
        return [func(*task) for task in tasks]
    with Pool(processes=min(workers, len(tasks))) as pool:
        return pool.starmap(func, tasks)


def _commit(staging: Path, output_dir: Path, partitions: int) -> None:
    moved: list[Path] = []
    try:
        for partition in range(partitions):
            name = _output_name(partition)
            os.replace(staging / name, output_dir / name)
            moved.append(output_dir / name)
    except OSError:
        # All or nothing: take back the part files already moved
        for path in moved:
            path.unlink(missing_ok=True)
        raise
    shutil.rmtree(staging)
    (output_dir / SUCCESS_MARKER).touch()


def run(input_path: Path, output_path: Path, config: RunConfig = RunConfig()) -> RunStats:
    """Deduplicate every shard under ``input_path`` into ``output_path``.

    Map tasks (one per shard) validate, key and locally collapse their
    records and spill them by partition. Once all map tasks are done, reduce
    tasks (one per partition) run the Global Phase and write one output
    shard each. Output only becomes visible when every task succeeded;
    on any failure the staging directory is removed and the error raised.

    Args:
        input_path: Input file or directory of shards.
        output_path: Output directory, absent or empty.
        config: Run configuration.

    Returns:
        Aggregated run counters.

    Raises:
        PipelineError: If input or output cannot be used.
        OSError: If reading or writing fails mid-run.
    """
    if config.partitions < 1:
        raise PipelineError(f"Anzahl Partitionen muss >= 1 sein, nicht {config.partitions}")

    shards = discover_shards(Path(input_path))
    output_dir = prepare_output(Path(output_path))
    if not shards:
        log.warning("Keine Eingabedateien in %s gefunden.", input_path)

    staging = output_dir / STAGING_DIR
    staging.mkdir()
    stats = RunStats()
    try:
        map_tasks = [(i, shard, staging, config) for i, shard in enumerate(shards)]
        for task_stats in _run_tasks(map_shard, map_tasks, config.workers):
            stats.merge(task_stats)

        reduce_tasks = [(p, staging, config) for p in range(config.partitions)]
        for task_stats in _run_tasks(reduce_partition, reduce_tasks, config.workers):
            stats.merge(task_stats)

        _commit(staging, output_dir, config.partitions)
    except BaseException:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    log.info(
        "Lauf abgeschlossen: %d Zeilen, %d verworfen, %d Schluessel, %d Matches ausgegeben",
        stats.lines, stats.rejected_total, stats.keys, stats.emitted,
    )
    return stats

