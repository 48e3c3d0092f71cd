"""Parsing of pt-online-schema-change output.

Every line becomes a ProgressEvent carrying the raw text. Lines the tool
uses to report stages, row estimates, percentages or copy rates also fill
in the structured fields; anything else is a plain log line.
"""
from __future__ import annotations
import re
import time
from dataclasses import dataclass
from typing import Optional

TIMESTAMP_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\s+")
TOTAL_ROWS = re.compile(r"Copying approximately (\d+) rows")
PERCENT = re.compile(r"Copying `[^`]+`\.`[^`]+`:\s+(\d+(?:\.\d+)?)%\s+(\S+)\s+remain")
COPIED = re.compile(r"Copied (\d+)/(\d+) rows(?:\s+\((\d+(?:\.\d+)?)%\))?")
RATE = re.compile(r"Current copy rate:\s*([\d.]+)\s*rows/sec")

STAGES = (
    ("Starting a dry run", "dry run"),
    ("Dry run complete", "dry run complete"),
    ("Creating new table", "creating new table"),
    ("Altering new table", "altering new table"),
    ("Creating triggers", "creating triggers"),
    ("Copying approximately", "copying rows"),
    ("Copied rows OK", "rows copied"),
    ("Analyzing new table", "analyzing new table"),
    ("Swapping tables", "swapping tables"),
    ("Dropping old table", "dropping old table"),
    ("Dropping triggers", "dropping triggers"),
    ("Successfully altered", "altered"),
)


@dataclass(frozen=True)
class ProgressEvent:
    line: str
    kind: str = "log"
    stage: str | None = None
    processed_rows: int | None = None
    total_rows: int | None = None
    percent: float | None = None
    speed: float | None = None
    remaining: str | None = None


def parse_line(raw: str) -> ProgressEvent:
    line = raw.rstrip("\r\n")
    text = TIMESTAMP_PREFIX.sub("", line.strip())

    m = PERCENT.search(text)
    if m:
        return ProgressEvent(line=line, kind="progress", stage="copying rows",
                             percent=float(m.group(1)), remaining=m.group(2))

    m = COPIED.search(text)
    if m:
        percent = float(m.group(3)) if m.group(3) else None
        return ProgressEvent(line=line, kind="progress", stage="copying rows",
                             processed_rows=int(m.group(1)), total_rows=int(m.group(2)), percent=percent)

    m = RATE.search(text)
    if m:
        return ProgressEvent(line=line, kind="progress", speed=float(m.group(1)))

    stage = None
    for prefix, label in STAGES:
        if text.startswith(prefix):
            stage = label
            break

    m = TOTAL_ROWS.search(text)
    if m:
        return ProgressEvent(line=line, kind="stage", stage=stage or "copying rows", total_rows=int(m.group(1)))

    if stage:
        return ProgressEvent(line=line, kind="stage", stage=stage)
    return ProgressEvent(line=line)


@dataclass
class ProgressSnapshot:
    processed_rows: int = 0
    total_rows: int = 0
    row_count_known: bool = False
    current_speed: float = 0.0
    current_stage: str | None = None

    @property
    def percent(self) -> float:
        if not self.row_count_known or self.total_rows <= 0:
            return 0.0
        return round(self.processed_rows / self.total_rows * 100, 2)


class ProgressTracker:
    """Folds parsed events into a running snapshot for one job."""

    def __init__(self, total_rows: int = 0, row_count_known: bool = False, clock=time.monotonic):
        self.snapshot = ProgressSnapshot(total_rows=total_rows, row_count_known=row_count_known)
        self._clock = clock
        self._last_rows = 0
        self._last_at: Optional[float] = None

    def apply(self, event: ProgressEvent) -> bool:
        """Returns True when the snapshot changed."""
        if event.kind == "log":
            return False
        s = self.snapshot
        if event.stage:
            s.current_stage = event.stage
        if event.total_rows is not None:
            s.total_rows = max(event.total_rows, 0)
            s.row_count_known = True
            if s.total_rows > 0:
                s.processed_rows = min(s.processed_rows, s.total_rows)
        processed = event.processed_rows
        if processed is None and event.percent is not None and s.row_count_known:
            processed = int(s.total_rows * event.percent / 100)
        if processed is not None:
            self._update_rows(processed, explicit_speed=event.speed is not None)
        if event.speed is not None:
            s.current_speed = max(event.speed, 0.0)
        return True

    def _update_rows(self, processed: int, explicit_speed: bool) -> None:
        s = self.snapshot
        processed = max(processed, s.processed_rows)
        if s.total_rows > 0:
            processed = min(processed, s.total_rows)
        now = self._clock()
        if self._last_at is not None and not explicit_speed:
            elapsed = now - self._last_at
            if elapsed > 0:
                s.current_speed = round(max(processed - self._last_rows, 0) / elapsed, 2)
        self._last_at = now
        self._last_rows = processed
        s.processed_rows = processed

    def complete(self) -> None:
        s = self.snapshot
        if s.row_count_known:
            s.processed_rows = s.total_rows
        s.current_speed = 0.0
