#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pydantic",
#     "pysam",
# ]
# ///
"""
Filter reads out of (or into) a name-sorted HTS file by read name.

Names come either from a sorted ID file, matched with a single-pass merge-join
against the name-sorted SAM/BAM/CRAM or FASTA/FASTQ input, or from a regular
expression searched in every read name.
"""

from __future__ import annotations

import argparse
import re
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from filter_errors import (
    ALIGNMENT_SORT_HINT,
    FASTX_SORT_HINT,
    ConfigurationError,
    FilterError,
    UnsupportedFormat,
)
from hts_records import (
    AlignmentReader,
    AlignmentWriter,
    FastxReader,
    FastxWriter,
    HtsKind,
)
from id_stream import IdentifierStream
from loguru import logger
from pydantic import Field, ValidationError, ValidationInfo, field_validator
from pydantic.dataclasses import dataclass
from sorted_filter import FilterSummary, filter_by_pattern, filter_sorted

if TYPE_CHECKING:
    from collections.abc import Sequence

# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Base at SUCCESS (0). Positive → louder (more verbose), negative → quieter.
    Map:
      +3.. = TRACE
      +2   = DEBUG
      +1   = INFO
       0   = SUCCESS
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    """
    logger.remove()
    delta = verbose - quiet
    match delta:
        case d if d >= 3:  # noqa: PLR2004
            level_str = "TRACE"
        case 2:
            level_str = "DEBUG"
        case 1:
            level_str = "INFO"
        case 0:
            level_str = "SUCCESS"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case d if d <= -3:  # noqa: PLR2004
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# ------------------------------ RUN CONFIG --------------------------------- #


@dataclass(frozen=True)
class FilterRunConfig:
    """Validated inputs for one filtering run."""

    hts_path: Path
    id_path: Path | None = None
    pattern: str | None = Field(default=None, validate_default=True)
    output: Path | None = None
    keep: bool = False
    reference: Path | None = None

    @field_validator("hts_path")
    @classmethod
    def hts_format_known(cls, v: Path) -> Path:
        HtsKind.detect(v)
        return v

    @field_validator("pattern")
    @classmethod
    def pattern_compiles(cls, v: str | None, info: ValidationInfo) -> str | None:
        if v is None:
            if info.data.get("id_path") is None:
                msg = "Must filter against something: provide an ID file or a regular expression"
                raise ValueError(msg)
            return v
        if info.data.get("id_path") is not None:
            msg = "Cannot specify both a regular expression and a file with exact IDs"
            raise ValueError(msg)
        try:
            re.compile(v)
        except re.error as e:
            msg = f"Invalid regular expression {v!r}: {e}"
            raise ValueError(msg) from e
        return v

    @field_validator("output")
    @classmethod
    def output_matches_input(cls, v: Path | None, info: ValidationInfo) -> Path | None:
        hts_path = info.data.get("hts_path")
        if v is not None and str(v) == "-":
            return None
        if v is None or hts_path is None:
            return v
        if HtsKind.detect(v) is not HtsKind.detect(hts_path):
            msg = f"Output {v} must be the same kind of HTS file as input {hts_path}"
            raise ValueError(msg)
        return v

    @property
    def kind(self) -> HtsKind:
        return HtsKind.detect(self.hts_path)


# ------------------------------ CORE LOGIC --------------------------------- #


def run_filter(config: FilterRunConfig) -> FilterSummary:
    """Open the input and output named by `config` and run the filter."""
    kind = config.kind
    reference = str(config.reference) if config.reference is not None else None

    if kind is HtsKind.ALIGNMENT:
        reader = AlignmentReader(config.hts_path, reference=reference)
        sort_hint = ALIGNMENT_SORT_HINT
    else:
        reader = FastxReader(config.hts_path)
        sort_hint = FASTX_SORT_HINT

    with reader:
        if kind is HtsKind.ALIGNMENT:
            writer = AlignmentWriter(config.output, template=reader.handle, reference=reference)
        else:
            writer = FastxWriter(config.output)
        with writer:
            if config.pattern is not None:
                logger.info(f"Filtering {config.hts_path} by pattern {config.pattern!r}")
                return filter_by_pattern(
                    reader,
                    re.compile(config.pattern),
                    writer,
                    keep=config.keep,
                )
            logger.info(f"Filtering {config.hts_path} against IDs in {config.id_path}")
            return filter_sorted(
                reader,
                IdentifierStream(config.id_path),
                writer,
                keep=config.keep,
                sort_hint=sort_hint,
            )


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        description=(
            "Remove (or keep only) reads whose names match a sorted ID file or a regex.\n"
            "With an ID file, both the HTS file and the IDs must be sorted by read name:\n"
            "  - SAM/BAM/CRAM: samtools sort -N  (lexicographic; not -n)\n"
            "  - IDs:          tr A-Z a-z < ids.in | LC_ALL=C sort > ids.sorted"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    p.add_argument(
        "hts_path",
        metavar="HTS",
        help="Name-sorted SAM/BAM/CRAM or FASTA/FASTQ (optionally .gz) to filter",
    )

    # Filter source
    source = p.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "-f",
        "--id-file",
        dest="id_path",
        metavar="FILE",
        default=None,
        help="Sorted text file containing all read names to filter",
    )
    source.add_argument(
        "-r",
        "--regex",
        dest="pattern",
        default=None,
        help="Regular expression to search for in the read names",
    )

    # I/O
    p.add_argument(
        "-o",
        "--output",
        default=None,
        help="Output file (same format family as the input). Defaults to STDOUT, also selected by '-'",
    )
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM read/write)",
    )

    # Selection
    p.add_argument(
        "-k",
        "--keep",
        action="store_true",
        help="Keep the records that match, instead of discarding them",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )

    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting filtering run.")

    try:
        config = FilterRunConfig(
            hts_path=args.hts_path,
            id_path=args.id_path,
            pattern=args.pattern,
            output=args.output,
            keep=bool(args.keep),
            reference=args.reference,
        )
    except ValidationError as e:
        logger.error(f"Invalid arguments: {e}")
        sys.exit(ConfigurationError.exit_code)
    except UnsupportedFormat as e:
        logger.debug(f"Exiting with code {e.exit_code} after {type(e).__name__}")
        sys.exit(e.exit_code)
    logger.debug(f"FilterRunConfig: {config}")

    try:
        summary = run_filter(config)
    except FilterError as e:
        logger.debug(f"Exiting with code {e.exit_code} after {type(e).__name__}")
        sys.exit(e.exit_code)

    logger.success(
        f"Read: {summary.records_read} | Written: {summary.records_written} | "
        f"Matched: {summary.records_matched} | Dropped: {summary.records_dropped}",
    )
    logger.info("Filtering run complete.")


if __name__ == "__main__":
    main()
