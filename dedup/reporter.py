"""Report generation for dedup runs (CSV, HTML, summary)."""

import csv
import logging
from pathlib import Path

from jinja2 import Environment, FileSystemLoader

from dedup import Discrepancy
from dedup.equality import elapsed_seconds
from dedup.pipeline import RunStats
from dedup.validator import REJECTION_REASONS

log = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / 'templates'

CSV_COLUMNS = [
    'Key',
    'Kind',
    'Kept_Date',
    'Kept_Origin',
    'Kept_Winner',
    'Other_Date',
    'Other_Origin',
    'Other_Winner',
    'Delta_Seconds',
    'Issues',
]


def _format_origin(origin: tuple[str, int]) -> str:
    shard, line = origin
    return f'{shard}:{line}' if shard else ''


def unique_discrepancies(discrepancies: list[Discrepancy]) -> list[Discrepancy]:
    """Drop findings reported by both phases for the same pair of reports."""
    seen: set[tuple] = set()
    unique: list[Discrepancy] = []
    for d in discrepancies:
        marker = (d.kind, d.key, d.kept.origin, d.other.origin)
        if marker in seen:
            continue
        seen.add(marker)
        unique.append(d)
    return unique


def _discrepancy_to_row(d: Discrepancy) -> dict:
    """Convert a Discrepancy to a flat dict for CSV/HTML output."""
    return {
        'Key': d.key,
        'Kind': d.kind,
        'Kept_Date': d.kept.timestamp,
        'Kept_Origin': _format_origin(d.kept.origin),
        'Kept_Winner': str(d.kept.winner_slot),
        'Other_Date': d.other.timestamp,
        'Other_Origin': _format_origin(d.other.origin),
        'Other_Winner': str(d.other.winner_slot),
        'Delta_Seconds': str(elapsed_seconds(d.kept, d.other)),
        'Issues': ', '.join(d.issues),
        # Set of issue codes for targeted cell highlighting in HTML
        '_issues': set(d.issues),
    }


def write_csv_report(discrepancies: list[Discrepancy], output_path: Path) -> None:
    """Write discrepancies as a CSV report.

    Uses UTF-8 with BOM (utf-8-sig) and semicolon delimiter for
    compatibility with German Excel.

    Args:
        discrepancies: Findings of the run.
        output_path: Path for the output CSV file.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    rows = unique_discrepancies(discrepancies)

    with open(output_path, 'w', newline='', encoding='utf-8-sig') as f:
        writer = csv.DictWriter(
            f, fieldnames=CSV_COLUMNS, delimiter=';', extrasaction='ignore',
        )
        writer.writeheader()
        for d in rows:
            writer.writerow(_discrepancy_to_row(d))

    log.info("CSV-Report geschrieben: %s (%d Zeilen)", output_path, len(rows))


def compute_stats(stats: RunStats) -> dict:
    """Flatten run counters for the summary and the HTML report."""
    return {
        'shards': stats.shards,
        'lines': stats.lines,
        'valid': stats.valid,
        'rejected': stats.rejected_total,
        'rejected_by_reason': {r: stats.rejected.get(r, 0) for r in REJECTION_REASONS},
        'local_dropped': stats.local_dropped,
        'global_dropped': stats.global_dropped,
        'keys': stats.keys,
        'emitted': stats.emitted,
        'near_duplicates': stats.near_duplicates,
        'winner_mismatch': stats.issues['WINNER_MISMATCH'],
        'deck_near_match': stats.issues['DECK_NEAR_MATCH'],
    }


def write_html_report(stats: RunStats, output_path: Path, run_name: str = '') -> None:
    """Write run statistics and discrepancies as an HTML report using Jinja2.

    Args:
        stats: Aggregated RunStats of the run.
        output_path: Path for the output HTML file.
        run_name: Name of the input (for the report title).
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    env = Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=True,
    )
    template = env.get_template('report.html')

    rows = [_discrepancy_to_row(d) for d in unique_discrepancies(stats.discrepancies)]
    html = template.render(
        run_name=run_name,
        rows=rows,
        stats=compute_stats(stats),
        columns=CSV_COLUMNS,
    )

    output_path.write_text(html, encoding='utf-8')
    log.info("HTML-Report geschrieben: %s", output_path)


def print_summary(stats: RunStats, run_name: str = '') -> None:
    """Print a summary of the run to stdout.

    Args:
        stats: Aggregated RunStats of the run.
        run_name: Name of the input.
    """
    s = compute_stats(stats)

    print(f"\n=== Dedup-Report: {run_name} ===")
    print(f"Eingabedateien:            {s['shards']:>7}")
    print(f"Zeilen gelesen:            {s['lines']:>7}")
    print(f"Gueltige Matches:          {s['valid']:>7}")
    print(f"Verworfen:                 {s['rejected']:>7}")
    for reason, count in s['rejected_by_reason'].items():
        print(f"  - {reason:<23}{count:>7}")
    print("---")
    print(f"Lokal zusammengefasst:     {s['local_dropped']:>7}")
    print(f"Global zusammengefasst:    {s['global_dropped']:>7}")
    print(f"Schluessel:                {s['keys']:>7}")
    print(f"Ausgegebene Matches:       {s['emitted']:>7}")
    print("---")
    print(f"Sieger widerspruechlich:   {s['winner_mismatch']:>7}")
    print(f"Fast-Duplikate:            {s['near_duplicates']:>7}")
    print()
