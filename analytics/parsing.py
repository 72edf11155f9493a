"""Background CSV parsing.

Large delimited payloads are parsed on a worker thread. The caller gets a
``ParseJob`` whose message channel yields ``ParseProgress`` ticks (one per
``chunk_rows`` rows) followed by exactly one terminal ``ParseComplete`` or
``ParseFailed``.
"""
from __future__ import annotations

import io
import logging
import queue
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Union

import pandas as pd

from analytics.errors import ParseError

logger = logging.getLogger(__name__)

PROGRESS_EVERY_ROWS = 10_000


@dataclass(frozen=True)
class ParseProgress:
    progress: int
    row_count: int


@dataclass(frozen=True)
class ParseComplete:
    data: pd.DataFrame
    row_count: int


@dataclass(frozen=True)
class ParseFailed:
    error: str


ParseMessage = Union[ParseProgress, ParseComplete, ParseFailed]


def read_header(csv_text: str) -> List[str]:
    header = pd.read_csv(io.StringIO(csv_text), nrows=0, dtype=str)
    return [str(c).strip().strip('"') for c in header.columns]


def parse_csv_text(
    csv_text: str,
    *,
    chunk_rows: int = PROGRESS_EVERY_ROWS,
    on_progress: Optional[Callable[[ParseProgress], None]] = None,
) -> pd.DataFrame:
    """Parse CSV text into an all-string frame; rows with extra fields are truncated, not dropped."""
    if not csv_text or not csv_text.strip():
        raise ParseError("CSV payload is empty.")
    try:
        headers = read_header(csv_text)
    except (pd.errors.EmptyDataError, pd.errors.ParserError) as exc:
        raise ParseError(f"CSV header could not be read: {exc}") from exc
    width = len(headers)
    total_lines = max(1, csv_text.count("\n"))

    frames: List[pd.DataFrame] = []
    parsed = 0
    reader = pd.read_csv(
        io.StringIO(csv_text),
        dtype=str,
        keep_default_na=False,
        skip_blank_lines=True,
        index_col=False,
        engine="python",
        on_bad_lines=lambda fields: fields[:width],
        chunksize=chunk_rows,
    )
    try:
        for chunk in reader:
            chunk.columns = headers
            frames.append(chunk)
            parsed += len(chunk)
            if on_progress is not None and len(chunk) == chunk_rows:
                on_progress(ParseProgress(progress=min(99, round(parsed / total_lines * 100)), row_count=parsed))
    except pd.errors.ParserError as exc:
        raise ParseError(f"CSV could not be parsed: {exc}") from exc
    if not frames:
        return pd.DataFrame(columns=headers, dtype=str)
    return pd.concat(frames, ignore_index=True)


class ParseJob:
    def __init__(self) -> None:
        self._messages: "queue.Queue[ParseMessage]" = queue.Queue()
        self._terminal: Optional[ParseMessage] = None

    def post(self, message: ParseMessage) -> None:
        self._messages.put(message)

    def messages(self, timeout: Optional[float] = None) -> Iterator[ParseMessage]:
        """Yield messages in order, ending after the terminal one.

        ``timeout`` bounds the whole exchange, not each message.
        """
        if self._terminal is not None:
            yield self._terminal
            return
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            wait = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                message = self._messages.get(timeout=wait)
            except queue.Empty:
                raise TimeoutError("CSV parsing did not finish in time.") from None
            if isinstance(message, (ParseComplete, ParseFailed)):
                self._terminal = message
                yield message
                return
            yield message

    def result(
        self,
        *,
        on_progress: Optional[Callable[[ParseProgress], None]] = None,
        timeout: Optional[float] = None,
    ) -> pd.DataFrame:
        for message in self.messages(timeout=timeout):
            if isinstance(message, ParseProgress):
                if on_progress is not None:
                    on_progress(message)
            elif isinstance(message, ParseComplete):
                return message.data
            else:
                raise ParseError(message.error)
        raise ParseError("CSV parsing ended without a result.")


class CSVParseWorker:
    """Owns the background thread used for CSV parsing; call ``close`` on teardown."""

    def __init__(self, *, chunk_rows: int = PROGRESS_EVERY_ROWS) -> None:
        self._chunk_rows = chunk_rows
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="csv-parse")

    def submit(self, csv_text: str) -> ParseJob:
        job = ParseJob()
        self._executor.submit(self._run, job, csv_text)
        return job

    def _run(self, job: ParseJob, csv_text: str) -> None:
        try:
            data = parse_csv_text(csv_text, chunk_rows=self._chunk_rows, on_progress=job.post)
        except Exception as exc:
            logger.warning("CSV parse failed: %s", exc)
            job.post(ParseFailed(error=str(exc) or type(exc).__name__))
            return
        job.post(ParseComplete(data=data, row_count=len(data)))

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
