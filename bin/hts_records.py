#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pysam",
# ]
# ///
"""
Record and sink adapters for HTS files.

The filtering engine only needs two capabilities from a record: a byte-string
key to compare (the read name) and a way to write itself to an output handle.
This module adapts pysam's aligned segments (SAM/BAM/CRAM) and FASTA/FASTQ
entries to that interface, and provides matching readers and writers.
"""

from __future__ import annotations

import gzip
import sys
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, TextIO

import pysam
from filter_errors import (
    FinalizeFailure,
    MalformedRecord,
    RecordSourceUnavailable,
    UnsupportedFormat,
    WriteFailure,
    fail,
)
from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Iterator

# ------------------------------- CONSTANTS -------------------------------- #

ALIGNMENT_EXTENSIONS = {".sam", ".bam", ".cram"}
FASTX_EXTENSIONS = {".fa", ".fasta", ".fna", ".fq", ".fastq"}


# ------------------------------- PROTOCOLS -------------------------------- #


class SequencingRecord(Protocol):
    """Anything with a comparable name that knows how to write itself."""

    @property
    def key(self) -> bytes: ...

    def write(self, handle: object) -> None: ...


class RecordSink(Protocol):
    """Destination for accepted records."""

    def write(self, record: SequencingRecord) -> None: ...

    def finish(self) -> None: ...


# ------------------------------ FILE TYPES --------------------------------- #


class HtsKind(Enum):
    """Family of record formats a path belongs to."""

    ALIGNMENT = auto()
    FASTX = auto()

    @staticmethod
    def detect(path: str | Path) -> HtsKind:
        """Classify a path by extension, looking through a trailing `.gz`."""
        suffixes = [s.lower() for s in Path(path).suffixes]
        if suffixes and suffixes[-1] == ".gz":
            suffixes = suffixes[:-1]
        ext = suffixes[-1] if suffixes else ""
        if ext in ALIGNMENT_EXTENSIONS and not str(path).lower().endswith(".gz"):
            return HtsKind.ALIGNMENT
        if ext in FASTX_EXTENSIONS:
            return HtsKind.FASTX
        msg = (
            f"Cannot determine the record format of {path}. "
            "Expected .sam, .bam, .cram, or FASTA/FASTQ (optionally .gz)."
        )
        raise fail(UnsupportedFormat(msg, stream=str(path)))


def _io_mode_from_ext(path: str, write: bool) -> str:  # noqa: FBT001
    """Determine pysam open mode from filename extension."""
    lower = path.lower()
    if lower.endswith(".sam"):
        return "w" if write else "r"
    if lower.endswith(".bam"):
        return "wb" if write else "rb"
    if lower.endswith(".cram"):
        return "wc" if write else "rc"
    msg = "Output/input must end with .sam, .bam, or .cram"
    raise fail(UnsupportedFormat(msg, stream=path))


# ------------------------------- RECORDS ----------------------------------- #


class AlignedRead:
    """A single SAM/BAM/CRAM alignment."""

    __slots__ = ("segment",)

    def __init__(self, segment: pysam.AlignedSegment) -> None:
        self.segment = segment

    def __repr__(self) -> str:
        return f"AlignedRead({self.segment.query_name!r})"

    @property
    def key(self) -> bytes:
        name = self.segment.query_name
        if name is None:
            msg = "Alignment record has no query name."
            raise fail(MalformedRecord(msg, stream="records"))
        return name.encode("utf-8")

    def write(self, handle: pysam.AlignmentFile) -> None:
        handle.write(self.segment)


class RawRead:
    """A single FASTA or FASTQ entry."""

    __slots__ = ("entry",)

    def __init__(self, entry: pysam.FastxRecord) -> None:
        self.entry = entry

    def __repr__(self) -> str:
        return f"RawRead({self.entry.name!r})"

    @property
    def key(self) -> bytes:
        return self.entry.name.encode("utf-8")

    def write(self, handle: TextIO) -> None:
        handle.write(f"{self.entry}\n")


# ------------------------------- READERS ----------------------------------- #


def open_alignment(
    path: str,
    write: bool,  # noqa: FBT001
    template: pysam.AlignmentFile | None = None,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """
    Open SAM/BAM/CRAM with correct mode. For CRAM, pass a reference filename.
    Writing requires the input file as `template` so its header is preserved.
    A write path of "-" sends uncompressed SAM to standard output.
    """
    mode = "w" if write and path == "-" else _io_mode_from_ext(path, write)

    kwargs = {}
    if path.lower().endswith(".cram") and reference is None:
        logger.warning(
            f"Opening CRAM without explicit reference: {path}. "
            "Decoding may fail unless the reference is resolvable.",
        )
    if path.lower().endswith(".cram") and reference is not None:
        kwargs["reference_filename"] = reference

    action = "write" if write else "read"
    logger.debug(f"Opening for {action}: {path} (mode={mode})")
    if write:
        assert template is not None, (
            f"Writing to '{path}' requires a template AlignmentFile but got None"
        )
        return pysam.AlignmentFile(path, mode, template=template, **kwargs)
    # check_sq=False: name-sorted and unaligned files may carry no @SQ lines
    return pysam.AlignmentFile(path, mode, check_sq=False, **kwargs)


class AlignmentReader:
    """Iterate a name-sorted SAM/BAM/CRAM file as `AlignedRead`s."""

    def __init__(self, path: str | Path, reference: str | None = None) -> None:
        self.path = str(path)
        try:
            self.handle = open_alignment(self.path, write=False, reference=reference)
        except (OSError, ValueError) as e:
            msg = f"HTS file {self.path} could not be opened."
            raise fail(RecordSourceUnavailable(msg, stream="records"), e) from e

    def __enter__(self) -> AlignmentReader:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self.handle.close()

    def __iter__(self) -> Iterator[AlignedRead]:
        segments = iter(self.handle)
        while True:
            try:
                segment = next(segments)
            except StopIteration:
                return
            except (OSError, ValueError) as e:
                msg = f"Error parsing record in HTS file {self.path}."
                raise fail(MalformedRecord(msg, stream="records"), e) from e
            yield AlignedRead(segment)


class FastxReader:
    """Iterate a FASTA/FASTQ file (plain or gzipped) as `RawRead`s."""

    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        try:
            self.handle = pysam.FastxFile(self.path)
        except (OSError, ValueError) as e:
            msg = f"HTS file {self.path} could not be opened."
            raise fail(RecordSourceUnavailable(msg, stream="records"), e) from e
        logger.debug(f"Opening for read: {self.path}")

    def __enter__(self) -> FastxReader:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self.handle.close()

    def __iter__(self) -> Iterator[RawRead]:
        entries = iter(self.handle)
        while True:
            try:
                entry = next(entries)
            except StopIteration:
                return
            except (OSError, ValueError) as e:
                msg = f"Error parsing record in HTS file {self.path}."
                raise fail(MalformedRecord(msg, stream="records"), e) from e
            yield RawRead(entry)


# ------------------------------- WRITERS ----------------------------------- #


class _SinkBase:
    """Shared write/finish bookkeeping for the concrete writers."""

    def __init__(self, target: str) -> None:
        self.target = target
        self.finished = False
        self.n_written = 0

    def __enter__(self):  # noqa: ANN204
        return self

    def __exit__(self, *exc_info: object) -> None:
        if not self.finished:
            self._release()

    def _handle(self) -> object:
        raise NotImplementedError

    def _finalize(self) -> None:
        raise NotImplementedError

    def _release(self) -> None:
        raise NotImplementedError

    def write(self, record: SequencingRecord) -> None:
        try:
            record.write(self._handle())
        except (OSError, ValueError) as e:
            msg = f"Could not write record to {self.target}."
            raise fail(WriteFailure(msg, stream="output"), e) from e
        self.n_written += 1

    def finish(self) -> None:
        if self.finished:
            return
        self.finished = True
        try:
            self._finalize()
        except (OSError, ValueError) as e:
            msg = f"Could not finalize output {self.target}."
            raise fail(FinalizeFailure(msg, stream="output"), e) from e
        logger.debug(f"Finalized {self.target} after {self.n_written} records")


class AlignmentWriter(_SinkBase):
    """Write `AlignedRead`s to SAM/BAM/CRAM, or SAM on standard output."""

    def __init__(
        self,
        path: str | Path | None,
        template: pysam.AlignmentFile,
        reference: str | None = None,
    ) -> None:
        super().__init__("-" if path is None else str(path))
        try:
            self.handle = open_alignment(
                self.target,
                write=True,
                template=template,
                reference=reference,
            )
        except (OSError, ValueError) as e:
            msg = f"Output file {self.target} could not be opened."
            raise fail(WriteFailure(msg, stream="output"), e) from e

    def _handle(self) -> pysam.AlignmentFile:
        return self.handle

    def _finalize(self) -> None:
        self.handle.close()

    def _release(self) -> None:
        self.handle.close()


class FastxWriter(_SinkBase):
    """Write `RawRead`s as text to a path (gzip for `.gz`) or standard output."""

    def __init__(self, path: str | Path | None) -> None:
        super().__init__("-" if path is None else str(path))
        self._owns_handle = path is not None
        try:
            if path is None:
                self.handle: TextIO = sys.stdout
            elif self.target.lower().endswith(".gz"):
                self.handle = gzip.open(self.target, "wt")
            else:
                self.handle = open(self.target, "w")  # noqa: SIM115
        except OSError as e:
            msg = f"Output file {self.target} could not be opened."
            raise fail(WriteFailure(msg, stream="output"), e) from e
        logger.debug(f"Opening for write: {self.target}")

    def _handle(self) -> TextIO:
        return self.handle

    def _finalize(self) -> None:
        self.handle.flush()
        if self._owns_handle:
            self.handle.close()

    def _release(self) -> None:
        if self._owns_handle:
            self.handle.close()
