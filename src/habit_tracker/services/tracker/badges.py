"""Badge schedule - milestone labels earned by progress count.

A token's badge set is derived, not stored state: it is always the prefix of
schedule labels whose threshold is at or below the token's progress count.
A proved token's badges are only valid under the schedule version that was
active when it was proved, so the schedule is versioned and the version is
stamped into every payload.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class BadgeSchedule:
    """Ordered (threshold, label) tiers with strictly increasing thresholds."""

    version: str
    tiers: tuple[tuple[int, str], ...]

    def __post_init__(self) -> None:
        previous = None
        labels = set()
        for threshold, label in self.tiers:
            if threshold < 0:
                raise ValueError(f"Badge threshold must be non-negative, got {threshold}")
            if previous is not None and threshold <= previous:
                raise ValueError(
                    f"Badge thresholds must be strictly increasing ({threshold} after {previous})"
                )
            if label in labels:
                raise ValueError(f"Duplicate badge label: {label!r}")
            previous = threshold
            labels.add(label)

    def badges_for(self, progress_count: int) -> tuple[str, ...]:
        """Labels earned at ``progress_count``, in table order."""
        return tuple(label for threshold, label in self.tiers if threshold <= progress_count)

    def next_badge(self, progress_count: int) -> tuple[int, str] | None:
        """Next tier not yet earned, or None when the schedule is complete."""
        for threshold, label in self.tiers:
            if threshold > progress_count:
                return threshold, label
        return None


DEFAULT_SCHEDULE = BadgeSchedule(
    version="v1",
    tiers=(
        (1, "First Strike"),
        (3, "Kindling"),
        (7, "Week Warrior"),
        (14, "Fortnight Focus"),
        (30, "Monthly Master"),
        (60, "Steadfast"),
        (100, "Centurion"),
        (180, "Half-Year Hero"),
        (365, "Year of Discipline"),
    ),
)


def badges_for(progress_count: int, schedule: BadgeSchedule = DEFAULT_SCHEDULE) -> tuple[str, ...]:
    """Badges earned at ``progress_count`` under ``schedule``."""
    return schedule.badges_for(progress_count)
