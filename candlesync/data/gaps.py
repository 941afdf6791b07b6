"""Gap detection over a sorted sequence of stored open times.

Algorithm
─────────
Single linear pass over adjacent pairs (prev, curr):

    curr > prev + d   →   missing bars [prev + d, curr - d]

plus two edge rules:

• Empty window   →   one gap [start, now]  (fresh series, seed from cursor)
• Stale tail     →   last + d < now - d  ⇒  gap [last + d, now]

The tail rule leaves one bar of slack so the bar that is still forming (and
the one that closed moments ago and may not be published upstream yet) do not
count as missing.

Cost is O(n) in stored points; a gap of a million bars is still one record.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from candlesync.timeframes import ms_to_iso


@dataclass(frozen=True)
class GapInterval:
    """Inclusive span ``[start, end]`` of missing bar open times."""

    start: int
    end:   int

    def missing_bars(self, duration: int) -> int:
        return max(0, (self.end - self.start) // duration + 1)

    def as_dict(self, duration: int) -> dict[str, object]:
        return {
            "start":        self.start,
            "end":          self.end,
            "start_iso":    ms_to_iso(self.start),
            "end_iso":      ms_to_iso(self.end),
            "missing_bars": self.missing_bars(duration),
        }


def scan_gaps(
    timestamps: Sequence[int],
    duration: int,
    now: int,
    start: int,
) -> list[GapInterval]:
    """Return missing intervals in ascending order.

    Parameters
    ----------
    timestamps : stored open times, sorted ascending, within the lookback window
    duration   : bar duration in ms
    now        : current wall-clock time in ms
    start      : cursor to seed from when *timestamps* is empty
    """
    if duration <= 0:
        raise ValueError(f"duration must be positive, got {duration}")

    if not timestamps:
        return [GapInterval(start, now)]

    gaps: list[GapInterval] = []
    prev = timestamps[0]
    for curr in timestamps[1:]:
        if curr > prev + duration:
            gaps.append(GapInterval(prev + duration, curr - duration))
        prev = curr

    last = timestamps[-1]
    if last + duration < now - duration:
        gaps.append(GapInterval(last + duration, now))

    return gaps
