"""Shared test fixtures."""

from pathlib import Path

import pytest

from dedup.validator import validate_line


DATA_DIR = Path(__file__).resolve().parent.parent / 'data'


@pytest.fixture(scope='session')
def data_dir() -> Path:
    """Path to the data directory."""
    return DATA_DIR


@pytest.fixture(scope='session')
def sample_path() -> Path:
    """Small input file with duplicates, a near-duplicate and rejects."""
    return DATA_DIR / 'sample.jsonl'


@pytest.fixture(scope='session')
def sample_lines(sample_path) -> list[str]:
    """All lines of sample.jsonl."""
    return sample_path.read_text(encoding='utf-8').splitlines()


@pytest.fixture(scope='session')
def sample_records(sample_lines):
    """Valid records of sample.jsonl in arrival order."""
    records = []
    for line_no, line in enumerate(sample_lines, start=1):
        result = validate_line(line, origin=('sample.jsonl', line_no))
        if result is not None and result.ok:
            records.append(result.record)
    return records
