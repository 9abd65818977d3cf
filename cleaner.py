"""match-dedup – CLI-Tool zur Bereinigung doppelt gemeldeter Matches."""

import argparse
import logging
import sys
from pathlib import Path

from dedup.equality import DEFAULT_TOLERANCE_SECONDS
from dedup.pipeline import (
    DEFAULT_PARTITIONS,
    DEFAULT_WORKERS,
    PipelineError,
    RunConfig,
    run,
)
from dedup.reporter import print_summary, write_csv_report, write_html_report


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        description='Validierung und Deduplizierung von Match-Meldungen (JSON Lines).',
        prog='cleaner.py',
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    run_parser = subparsers.add_parser(
        'run', help='Eingabe deduplizieren und Ergebnis schreiben',
    )
    run_parser.add_argument(
        'input', type=Path,
        help='Eingabedatei oder Verzeichnis mit Eingabedateien',
    )
    run_parser.add_argument(
        'output', type=Path,
        help='Ausgabeverzeichnis (darf nicht existieren oder muss leer sein)',
    )
    run_parser.add_argument(
        '--tolerance', type=float, default=DEFAULT_TOLERANCE_SECONDS,
        help=f'Zeitfenster in Sekunden fuer Duplikate (Standard: {DEFAULT_TOLERANCE_SECONDS})',
    )
    run_parser.add_argument(
        '--partitions', type=int, default=DEFAULT_PARTITIONS,
        help=f'Anzahl Ausgabe-Partitionen (Standard: {DEFAULT_PARTITIONS})',
    )
    run_parser.add_argument(
        '--workers', type=int, default=DEFAULT_WORKERS,
        help=f'Anzahl paralleler Prozesse (Standard: {DEFAULT_WORKERS})',
    )
    run_parser.add_argument(
        '--no-id', action='store_true',
        help='Kein synthetisches "id"-Feld in der Ausgabe',
    )
    run_parser.add_argument(
        '--report', type=Path,
        help='Pfad fuer den Auffaelligkeiten-Report (CSV)',
    )
    run_parser.add_argument(
        '--html', action='store_true',
        help='Zusaetzlich einen HTML-Report erzeugen (neben --report)',
    )
    run_parser.add_argument(
        '--summary', action='store_true',
        help='Zusammenfassung auf stdout ausgeben',
    )
    return parser


def run_command(args: argparse.Namespace) -> int:
    """Execute the ``run`` subcommand and return the exit code."""
    config = RunConfig(
        tolerance=args.tolerance,
        partitions=args.partitions,
        workers=args.workers,
        with_id=not args.no_id,
        collect_discrepancies=args.report is not None,
    )

    try:
        stats = run(args.input, args.output, config)
    except (PipelineError, OSError) as exc:
        logging.error("Lauf fehlgeschlagen: %s", exc)
        return 1

    if args.report:
        try:
            write_csv_report(stats.discrepancies, args.report)
            if args.html:
                write_html_report(stats, args.report.with_suffix('.html'), args.input.name)
        except OSError as exc:
            logging.error("Report konnte nicht geschrieben werden: %s", exc)
            return 1

    if args.summary:
        print_summary(stats, args.input.name)

    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(levelname)s: %(message)s',
    )

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.html and not args.report:
        parser.error('--report ist erforderlich bei Verwendung von --html.')
    if args.tolerance < 0:
        parser.error('--tolerance darf nicht negativ sein.')
    if args.partitions < 1:
        parser.error('--partitions muss mindestens 1 sein.')
    if args.workers < 1:
        parser.error('--workers muss mindestens 1 sein.')

    return run_command(args)


if __name__ == '__main__':
    sys.exit(main())
