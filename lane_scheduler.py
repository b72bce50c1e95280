"""Greedy lane assignment for scrolling comments.

Each comment scrolls across the screen for ``speed_ms``. Comments are placed
in arrival order into the lowest lane that is already free at their start
time. When every lane is still busy the lane that frees up soonest is reused,
so no comment is ever dropped.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable

from danmaku_errors import ConfigurationError


@dataclass(frozen=True)
class CommentEvent:
    author_id: str
    text: str
    timestamp_ms: int


@dataclass(frozen=True)
class LaneAssignment:
    event: CommentEvent
    lane: int
    display_start: int
    display_end: int


class LaneScheduler:
    """Assigns comments to ``max_lanes`` lanes. Not thread-safe; one run at a time."""

    def __init__(self, max_lanes: int, speed_ms: int):
        if max_lanes is None or max_lanes < 1:
            raise ConfigurationError(f"max_lanes must be >= 1, got {max_lanes}")
        if speed_ms <= 0:
            raise ConfigurationError(f"speed_ms must be > 0, got {speed_ms}")
        self.max_lanes = max_lanes
        self.speed_ms = speed_ms
        self.forced_reuses = 0

    def _pick_lane(self, next_free_at: list[float], start: int) -> int:
        for lane, free_at in enumerate(next_free_at):
            if free_at <= start:
                return lane

        # Overloaded: reuse whichever lane frees up first (lowest index on ties)
        self.forced_reuses += 1
        best = 0
        for lane in range(1, len(next_free_at)):
            if next_free_at[lane] < next_free_at[best]:
                best = lane
        return best

    def schedule(self, events: Iterable[CommentEvent]) -> list[LaneAssignment]:
        """Returns one assignment per event, in input order."""
        # Every lane starts free, even for events before time zero
        next_free_at = [-math.inf] * self.max_lanes
        self.forced_reuses = 0
        assignments = []

        for event in events:
            start = event.timestamp_ms
            end = start + self.speed_ms
            lane = self._pick_lane(next_free_at, start)
            next_free_at[lane] = max(next_free_at[lane], start) + self.speed_ms
            assignments.append(LaneAssignment(event, lane, start, end))

        return assignments


def schedule_lanes(events: Iterable[CommentEvent], max_lanes: int, speed_ms: int) -> list[LaneAssignment]:
    """Schedules events with a fresh LaneScheduler."""
    return LaneScheduler(max_lanes, speed_ms).schedule(events)
