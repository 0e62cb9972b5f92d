# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for the HTS name filter.

This module provides shared fixtures for testing the sorted-stream filter and
its file adapters. It includes in-memory mock records and sinks for exercising
the merge-join logic directly, and helpers that write small name-sorted
SAM/BAM/FASTQ files and ID lists for end-to-end tests.
"""

import gzip
import sys
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pysam
import pytest

# Add bin directory to Python path so we can import the modules under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def reference_sequence() -> str:
    """Simple reference sequence for the test alignments."""
    return "ATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCG"


# ------------------------------ MOCK STREAMS ------------------------------- #


class MockRecord:
    """Minimal record for unit testing the engine without pysam."""

    def __init__(self, name: str | bytes, serial: int = 0) -> None:
        self.raw = name if isinstance(name, bytes) else name.encode("utf-8")
        self.serial = serial

    def __repr__(self) -> str:
        return f"MockRecord({self.raw!r}, {self.serial})"

    @property
    def name(self) -> str:
        return self.raw.decode("utf-8", errors="replace")

    @property
    def key(self) -> bytes:
        return self.raw

    def write(self, handle: list) -> None:
        handle.append(self)


class ListSink:
    """Collects written records and counts finalization calls."""

    def __init__(self) -> None:
        self.records: list[MockRecord] = []
        self.finish_calls = 0

    def write(self, record: MockRecord) -> None:
        record.write(self.records)

    def finish(self) -> None:
        self.finish_calls += 1

    @property
    def names(self) -> list[str]:
        return [r.name for r in self.records]


class CountingIterator:
    """Wrap an iterable and count how many items were pulled from it."""

    def __init__(self, items: list[str]) -> None:
        self._items = iter(items)
        self.pulled = 0

    def __iter__(self) -> "CountingIterator":
        return self

    def __next__(self) -> str:
        item = next(self._items)
        self.pulled += 1
        return item


@pytest.fixture
def make_records() -> Callable[[list[str]], list[MockRecord]]:
    """Build mock records from names, numbering duplicates so they stay distinct."""

    def _make(names: list[str]) -> list[MockRecord]:
        return [MockRecord(name, serial=i) for i, name in enumerate(names)]

    return _make


@pytest.fixture
def sink() -> ListSink:
    return ListSink()


# ------------------------------- FILE DATA --------------------------------- #


def create_sam_header(reference_sequence: str) -> dict[str, Any]:
    """Create a minimal name-sorted SAM header for testing."""
    return {
        "HD": {"VN": "1.6", "SO": "queryname"},
        "SQ": [{"SN": "test_reference", "LN": len(reference_sequence)}],
        "PG": [{"ID": "test", "PN": "filter_reads_test", "VN": "0.1.0"}],
    }


def write_alignments(
    path: Path,
    names: list[str],
    reference_sequence: str,
    mode: str = "w",
) -> Path:
    """Write one 12M alignment per name, in the given order."""
    header = create_sam_header(reference_sequence)
    with pysam.AlignmentFile(str(path), mode, header=header) as out:
        for i, qname in enumerate(names):
            read = pysam.AlignedSegment()
            read.query_name = qname
            read.query_sequence = "ATCGATCGATCG"
            read.query_qualities = pysam.qualitystring_to_array("I" * 12)
            read.cigartuples = [(0, 12)]
            read.reference_id = 0
            read.reference_start = i
            read.mapping_quality = 60
            read.flag = 0
            out.write(read)
    return path


def read_alignment_names(path: Path) -> list[str]:
    """Return the query names of every record in a SAM/BAM file."""
    with pysam.AlignmentFile(str(path), "r" if path.suffix == ".sam" else "rb", check_sq=False) as inp:
        return [read.query_name for read in inp.fetch(until_eof=True)]


def fastq_text(names: list[str]) -> str:
    return "".join(f"@{name}\nACGTACGT\n+\nIIIIIIII\n" for name in names)


def write_fastq(path: Path, names: list[str]) -> Path:
    text = fastq_text(names)
    if path.suffix == ".gz":
        with gzip.open(path, "wt") as fh:
            fh.write(text)
    else:
        path.write_text(text)
    return path


def write_ids(path: Path, ids: list[str]) -> Path:
    path.write_text("".join(f"{i}\n" for i in ids))
    return path


@pytest.fixture
def mate_names() -> list[str]:
    """Name-sorted read names with mates (duplicated names) and a multi-mapper."""
    return [
        "read_001",
        "read_001",
        "read_002",
        "read_003",
        "read_003",
        "read_003",
        "read_004",
        "read_005",
        "read_005",
    ]


@pytest.fixture
def name_sorted_sam(temp_dir: Path, reference_sequence: str, mate_names: list[str]) -> Path:
    """SAM file whose records are sorted by query name."""
    return write_alignments(temp_dir / "namesorted.sam", mate_names, reference_sequence)


@pytest.fixture
def name_sorted_bam(temp_dir: Path, reference_sequence: str, mate_names: list[str]) -> Path:
    """BAM file whose records are sorted by query name."""
    return write_alignments(
        temp_dir / "namesorted.bam",
        mate_names,
        reference_sequence,
        mode="wb",
    )


@pytest.fixture
def name_sorted_fastq(temp_dir: Path) -> Path:
    return write_fastq(
        temp_dir / "namesorted.fastq",
        ["SRR001.1", "SRR001.2", "SRR001.3", "SRR001.4"],
    )


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    # Remove existing handlers and set to WARNING level for tests
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
