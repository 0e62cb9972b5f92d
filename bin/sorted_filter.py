#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
# ]
# ///
"""
Merge-join filter over a name-sorted record stream and a sorted ID stream.

Both inputs are walked once, in lockstep, holding only the current and previous
item of each side. For each record the engine decides whether its name sorts
before, at, or after the current identifier:

- before: no identifier can match it any more, so it is "unmatched"
- after:  the identifiers need to catch up; advance the ID cursor only
- at:     it is "matched"; advance the record cursor only, since mates and
          multi-mapped alignments share a name and must all see this ID

Unmatched records are written in discard mode (`keep=False`), matched records
in keep mode (`keep=True`). Once the identifiers run out, every remaining
record is unmatched and the rest of the stream is drained by the tail flusher.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Generic, TypeVar

from filter_errors import (
    ALIGNMENT_SORT_HINT,
    ID_SORT_HINT,
    EmptyIdSource,
    EmptyRecordSource,
    IdentifiersNotSorted,
    MalformedRecord,
    RecordsNotSorted,
    fail,
)
from id_stream import fold_name
from loguru import logger

if TYPE_CHECKING:
    import re
    from collections.abc import Iterable, Iterator

    from hts_records import RecordSink, SequencingRecord

T = TypeVar("T")

# ------------------------------- CONSTANTS -------------------------------- #

# Emit a progress debug line after reading this many records
DEBUG_EVERY: int = 100_000


# ------------------------------- DATA TYPES -------------------------------- #


@dataclass(frozen=True)
class FilterPolicy:
    """Whether matching records are kept (`keep=True`) or discarded."""

    keep: bool = False

    def emits(self, matched: bool) -> bool:  # noqa: FBT001
        """Return True if a record with this match outcome is written."""
        return matched == self.keep


@dataclass(frozen=True)
class FilterSummary:
    """Counts from one filtering pass."""

    records_read: int
    records_written: int
    records_matched: int
    identifiers_read: int

    @property
    def records_dropped(self) -> int:
        return self.records_read - self.records_written


class CursorState(Enum):
    ACTIVE = auto()
    EXHAUSTED = auto()


class Order(Enum):
    """Where the current record's name falls relative to the current ID."""

    BEFORE = auto()
    AT = auto()
    AFTER = auto()

    @staticmethod
    def compare(record_key: str, identifier: str) -> Order:
        if record_key < identifier:
            return Order.BEFORE
        if record_key > identifier:
            return Order.AFTER
        return Order.AT


# -------------------------------- CURSORS ---------------------------------- #


class _Cursor(Generic[T]):
    """
    One-item lookahead over a sorted source.

    Holds the current item and its folded key plus the previous key, and
    rejects any step that would make the key go backwards. Equal keys are
    allowed.
    """

    label: str = "items"

    def __init__(self, source: Iterable[T]) -> None:
        self._source: Iterator[T] = iter(source)
        self.state = CursorState.ACTIVE
        self.current: T | None = None
        self.current_key: str | None = None
        self.previous_key: str | None = None
        self.n_read = 0

    @property
    def active(self) -> bool:
        return self.state is CursorState.ACTIVE

    def _key_of(self, item: T) -> str:
        raise NotImplementedError

    def _empty_error(self) -> Exception:
        raise NotImplementedError

    def _disorder_error(self, previous: str, current: str) -> Exception:
        raise NotImplementedError

    def prime(self) -> None:
        """Read the first item. An empty source is a configuration error."""
        if not self.advance():
            raise self._empty_error()

    def advance(self) -> bool:
        """Step to the next item. Returns False once the source is exhausted."""
        try:
            item = next(self._source)
        except StopIteration:
            self.state = CursorState.EXHAUSTED
            self.current = None
            return False

        key = self._key_of(item)
        if self.current_key is not None and key < self.current_key:
            raise self._disorder_error(self.current_key, key)

        self.previous_key = self.current_key
        self.current = item
        self.current_key = key
        self.n_read += 1
        return True


class IdentifierCursor(_Cursor[str]):
    label = "identifiers"

    def _key_of(self, item: str) -> str:
        # identifiers arrive already folded from IdentifierStream, but a plain
        # iterable of names is accepted too
        return fold_name(item)

    def _empty_error(self) -> Exception:
        msg = "No IDs in ID file. Nothing to filter against."
        return fail(EmptyIdSource(msg, stream=self.label))

    def _disorder_error(self, previous: str, current: str) -> Exception:
        msg = f"IDs aren't sorted: {current!r} follows {previous!r}."
        return fail(IdentifiersNotSorted(msg, stream=self.label, remedy=ID_SORT_HINT))


class RecordCursor(_Cursor["SequencingRecord"]):
    label = "records"

    def __init__(
        self,
        source: Iterable[SequencingRecord],
        sort_hint: str = ALIGNMENT_SORT_HINT,
    ) -> None:
        super().__init__(source)
        self.sort_hint = sort_hint

    def _key_of(self, item: SequencingRecord) -> str:
        raw = item.key
        try:
            return fold_name(raw.decode("utf-8"))
        except UnicodeDecodeError as e:
            msg = f"Record name {raw!r} is not valid UTF-8."
            raise fail(MalformedRecord(msg, stream=self.label), e) from e

    def _empty_error(self) -> Exception:
        msg = "No reads in HTS file. Nothing to filter."
        return fail(EmptyRecordSource(msg, stream=self.label))

    def _disorder_error(self, previous: str, current: str) -> Exception:
        msg = f"HTS file isn't sorted by name: {current!r} follows {previous!r}."
        return fail(RecordsNotSorted(msg, stream=self.label, remedy=self.sort_hint))


# ------------------------------ CORE LOGIC --------------------------------- #


def flush_tail(
    records: RecordCursor,
    sink: RecordSink,
    policy: FilterPolicy,
) -> int:
    """
    Drain the record cursor after the identifiers ran out.

    No identifier is left to match, so every remaining record is unmatched:
    all are written in discard mode and all are dropped in keep mode. Records
    are still read (and their order still checked) in both modes.

    Returns the number of records written.
    """
    logger.info(
        f"ID file exhausted after {records.n_read} records; "
        f"{'writing' if policy.emits(matched=False) else 'dropping'} remaining records",
    )
    written = 0
    while records.advance():
        if policy.emits(matched=False):
            sink.write(records.current)
            written += 1
    return written


class SortedStreamFilter:
    """
    Single-pass merge-join of a record stream against an identifier stream.

    Both sources must already be sorted by case-folded name. The filter owns
    its cursors and sink for the duration of `run()` and is not reusable.
    """

    def __init__(
        self,
        records: Iterable[SequencingRecord],
        identifiers: Iterable[str],
        sink: RecordSink,
        policy: FilterPolicy,
        sort_hint: str = ALIGNMENT_SORT_HINT,
    ) -> None:
        self.records = RecordCursor(records, sort_hint=sort_hint)
        self.identifiers = IdentifierCursor(identifiers)
        self.sink = sink
        self.policy = policy
        self.written = 0
        self.matched = 0

    def _emit_if(self, matched: bool) -> None:  # noqa: FBT001
        if self.policy.emits(matched):
            self.sink.write(self.records.current)
            self.written += 1

    def run(self) -> FilterSummary:
        self.identifiers.prime()
        self.records.prime()
        logger.debug(
            f"First ID {self.identifiers.current_key!r}, "
            f"first record {self.records.current_key!r}, keep={self.policy.keep}",
        )

        while self.records.active and self.identifiers.active:
            order = Order.compare(self.records.current_key, self.identifiers.current_key)
            logger.trace(
                f"record={self.records.current_key!r} id={self.identifiers.current_key!r} -> {order.name}",
            )

            if order is Order.AFTER:
                # the current record waits for the IDs to catch up
                if not self.identifiers.advance():
                    self._emit_if(matched=False)
                    self.written += flush_tail(self.records, self.sink, self.policy)
                continue

            if order is Order.AT:
                self.matched += 1
            self._emit_if(matched=order is Order.AT)
            self.records.advance()

            if self.records.n_read % DEBUG_EVERY == 0:
                logger.debug(
                    f"Progress: records={self.records.n_read}, "
                    f"ids={self.identifiers.n_read}, written={self.written}",
                )

        self.sink.finish()

        summary = FilterSummary(
            records_read=self.records.n_read,
            records_written=self.written,
            records_matched=self.matched,
            identifiers_read=self.identifiers.n_read,
        )
        logger.info(
            f"Filter totals: read={summary.records_read}, written={summary.records_written}, "
            f"matched={summary.records_matched}, ids={summary.identifiers_read}",
        )
        return summary


def filter_sorted(
    records: Iterable[SequencingRecord],
    identifiers: Iterable[str],
    sink: RecordSink,
    keep: bool = False,  # noqa: FBT001, FBT002
    sort_hint: str = ALIGNMENT_SORT_HINT,
) -> FilterSummary:
    """
    Filter name-sorted `records` against sorted `identifiers` into `sink`.

    Args:
        records: Records sorted by case-folded name; repeated names are allowed
        identifiers: IDs sorted by case-folded value
        sink: Destination for accepted records; finished exactly once on success
        keep: Keep only matching records (True) or discard them (False)
        sort_hint: Remedy appended to the error if the records are out of order

    Returns:
        FilterSummary with the counts for this pass
    """
    engine = SortedStreamFilter(
        records,
        identifiers,
        sink,
        FilterPolicy(keep=keep),
        sort_hint=sort_hint,
    )
    return engine.run()


def filter_by_pattern(
    records: Iterable[SequencingRecord],
    pattern: re.Pattern[str],
    sink: RecordSink,
    keep: bool = False,  # noqa: FBT001, FBT002
) -> FilterSummary:
    """
    Filter `records` by searching `pattern` in each record name.

    Unlike `filter_sorted`, order does not matter here: each record is decided
    on its own. Names are matched as written, without case folding.
    """
    policy = FilterPolicy(keep=keep)
    n_read = 0
    written = 0
    matched = 0
    for record in records:
        n_read += 1
        raw = record.key
        try:
            name = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            msg = f"Record name {raw!r} is not valid UTF-8."
            raise fail(MalformedRecord(msg, stream="records"), e) from e
        hit = pattern.search(name) is not None
        matched += hit
        if policy.emits(hit):
            sink.write(record)
            written += 1
        if n_read % DEBUG_EVERY == 0:
            logger.debug(f"Progress: records={n_read}, written={written}")

    if n_read == 0:
        msg = "No reads in HTS file. Nothing to filter."
        raise fail(EmptyRecordSource(msg, stream="records"))

    sink.finish()
    summary = FilterSummary(
        records_read=n_read,
        records_written=written,
        records_matched=matched,
        identifiers_read=0,
    )
    logger.info(
        f"Filter totals: read={summary.records_read}, written={summary.records_written}, "
        f"matched={summary.records_matched}",
    )
    return summary
