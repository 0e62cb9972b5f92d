#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
# ]
# ///
"""
Lazy reader for a sorted, line-delimited file of read names.

The file is read one line at a time and never held in memory. Each line is
decoded as UTF-8, stripped of its line terminator and surrounding whitespace,
and case-folded so it can be compared directly against folded record names.
Blank lines are skipped. Iterating the stream a second time re-opens the file
from the start.
"""

from __future__ import annotations

import gzip
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from filter_errors import IdSourceUnavailable, MalformedIdentifier, fail
from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Iterator


def fold_name(name: str) -> str:
    """Case-fold a read name or identifier for comparison."""
    return name.lower()


class IdentifierStream:
    """Restartable, forward-only stream of case-folded identifiers."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def __repr__(self) -> str:
        return f"IdentifierStream({str(self.path)!r})"

    def _open(self) -> BinaryIO:
        try:
            if self.path.suffix.lower() == ".gz":
                return gzip.open(self.path, "rb")
            return self.path.open("rb")
        except OSError as e:
            msg = f"IDs file {self.path} could not be opened."
            raise fail(IdSourceUnavailable(msg, stream="ids"), e) from e

    def __iter__(self) -> Iterator[str]:
        handle = self._open()
        logger.debug(f"Reading identifiers from {self.path}")
        with handle:
            for lineno, raw in enumerate(handle, start=1):
                try:
                    line = raw.decode("utf-8")
                except UnicodeDecodeError as e:
                    msg = f"Error parsing line {lineno} in ID file {self.path}."
                    raise fail(MalformedIdentifier(msg, stream="ids"), e) from e
                ident = line.strip()
                if not ident:
                    continue
                yield fold_name(ident)
