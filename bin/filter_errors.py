#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
# ]
# ///
"""
Error taxonomy for filtering name-sorted HTS files against a sorted ID list.

Every failure is terminal for the filtering pass. The categories differ in what
the user has to do about them (fix the invocation, re-sort an input, repair an
input, or check the output destination), so each carries its own exit code and
an optional remedy string that the CLI appends to its message.
"""

from __future__ import annotations

from loguru import logger

# ------------------------------- CONSTANTS -------------------------------- #

ID_SORT_HINT = (
    'Please sort with `tr "A-Z" "a-z" < ids.in | LC_ALL=C sort > ids.sorted`.'
)
# samtools sort -n uses natural order (SRR1.9 before SRR1.10); -N is plain
# lexicographic, which is what the filter compares. Names are compared
# lowercased, so names differing only in case must also be in lowercase order.
ALIGNMENT_SORT_HINT = (
    "Please sort with `samtools sort -N` (lexicographic name order, not `-n`); "
    "names that differ only in case must also be ordered by their lowercased form."
)
FASTX_SORT_HINT = (
    "Please sort with "
    '`(z)cat {input} | paste - - - - | LC_ALL=C sort | tr -s "\\t" "\\n" > {input}.sorted.fastq`.'
)


# ------------------------------ EXCEPTIONS --------------------------------- #


class FilterError(Exception):
    """Base class for every failure of a filtering pass."""

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        stream: str | None = None,
        remedy: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stream = stream
        self.remedy = remedy

    def __str__(self) -> str:
        parts = [self.message]
        if self.remedy:
            parts.append(self.remedy)
        return " ".join(parts)


class ConfigurationError(FilterError):
    """The pass cannot start: a source is missing, empty, or unsupported."""

    exit_code = 2


class IdSourceUnavailable(ConfigurationError):
    pass


class EmptyIdSource(ConfigurationError):
    pass


class RecordSourceUnavailable(ConfigurationError):
    pass


class EmptyRecordSource(ConfigurationError):
    pass


class UnsupportedFormat(ConfigurationError):
    pass


class OrderingError(FilterError):
    """One of the inputs is not in non-decreasing order."""

    exit_code = 3


class IdentifiersNotSorted(OrderingError):
    pass


class RecordsNotSorted(OrderingError):
    pass


class DecodeError(FilterError):
    """An identifier line or a record could not be parsed."""

    exit_code = 4


class MalformedIdentifier(DecodeError):
    pass


class MalformedRecord(DecodeError):
    pass


class SinkError(FilterError):
    """Writing to or finalizing the output failed."""

    exit_code = 5


class WriteFailure(SinkError):
    pass


class FinalizeFailure(SinkError):
    pass


# ------------------------------- HELPERS ---------------------------------- #


def fail(error: FilterError, cause: BaseException | None = None) -> FilterError:
    """
    Log `error` and return it so the caller can `raise fail(...) from cause`.

    Every error is logged here, at the raise site, under its class name and
    with the underlying cause attached when there is one. Callers that catch
    it should not log it again at error level.
    """
    name = type(error).__name__
    if cause is not None:
        logger.error(f"{name}: {error} ({type(cause).__name__}: {cause})")
    else:
        logger.error(f"{name}: {error}")
    return error
