"""State transition validator.

The same rules are enforced on-chain by the habit tracker contract inside the
prover. Running them here is a pre-flight that refuses obviously invalid
requests before paying proving cost, so the two must never diverge.

Rules for an update, checked in order (first failure wins):
1. Owner unchanged
2. Progress count advances by exactly one
3. At least ``min_interval`` seconds since the previous update (skipped when
   the previous state carries no update timestamp)
4. Badge set equals the schedule-derived set for the new count

Genesis (no previous state) accepts any state with count 0 and no badges.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from habit_tracker.models.token import TokenState
from habit_tracker.services.exceptions import StateValidationError
from habit_tracker.services.tracker.badges import DEFAULT_SCHEDULE, BadgeSchedule

MIN_UPDATE_INTERVAL_SECONDS = 5


class ValidationErrorCode(str, Enum):
    """Reason a proposed state was refused."""

    OWNER_MISMATCH = "OwnerMismatch"
    INVALID_INCREMENT = "InvalidIncrement"
    TOO_SOON = "TooSoon"
    BADGE_MISMATCH = "BadgeMismatch"
    MISSING_OUTPUT = "MissingOutput"


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one transition."""

    error: Optional[ValidationErrorCode] = None
    detail: str = ""

    @property
    def is_valid(self) -> bool:
        return self.error is None

    @classmethod
    def valid(cls) -> "ValidationResult":
        return cls()

    @classmethod
    def invalid(cls, error: ValidationErrorCode, detail: str) -> "ValidationResult":
        return cls(error=error, detail=detail)


def validate(
    previous: Optional[TokenState],
    next: TokenState,
    *,
    schedule: BadgeSchedule = DEFAULT_SCHEDULE,
    min_interval: int = MIN_UPDATE_INTERVAL_SECONDS,
) -> ValidationResult:
    """Decide whether ``next`` is a legal successor of ``previous``.

    Pure and total: never raises, never touches I/O.

    Args:
        previous: Current token state, or None for genesis
        next: Proposed successor state
        schedule: Badge schedule the token was proved under
        min_interval: Minimum seconds between two updates

    Returns:
        ValidationResult, valid or carrying the first failing rule
    """
    if previous is None:
        if next.progress_count != 0:
            return ValidationResult.invalid(
                ValidationErrorCode.INVALID_INCREMENT,
                f"Genesis state must start at 0, got {next.progress_count}",
            )
        if next.badges:
            return ValidationResult.invalid(
                ValidationErrorCode.BADGE_MISMATCH,
                f"Genesis state must carry no badges, got {list(next.badges)}",
            )
        return ValidationResult.valid()

    if next.owner != previous.owner:
        return ValidationResult.invalid(
            ValidationErrorCode.OWNER_MISMATCH,
            f"Owner changed from {previous.owner} to {next.owner}",
        )

    expected_count = previous.progress_count + 1
    if next.progress_count != expected_count:
        return ValidationResult.invalid(
            ValidationErrorCode.INVALID_INCREMENT,
            f"Progress must advance to {expected_count}, got {next.progress_count}",
        )

    if previous.last_updated_at is not None and next.last_updated_at is not None:
        elapsed = next.last_updated_at - previous.last_updated_at
        if elapsed < min_interval:
            return ValidationResult.invalid(
                ValidationErrorCode.TOO_SOON,
                f"Only {elapsed}s since last update, need at least {min_interval}s",
            )

    expected_badges = schedule.badges_for(next.progress_count)
    if tuple(next.badges) != expected_badges:
        return ValidationResult.invalid(
            ValidationErrorCode.BADGE_MISMATCH,
            f"Badges for count {next.progress_count} must be {list(expected_badges)}, "
            f"got {list(next.badges)}",
        )

    return ValidationResult.valid()


def ensure_valid(
    previous: Optional[TokenState],
    next: TokenState,
    *,
    schedule: BadgeSchedule = DEFAULT_SCHEDULE,
    min_interval: int = MIN_UPDATE_INTERVAL_SECONDS,
) -> None:
    """Raise StateValidationError unless the transition is valid."""
    result = validate(previous, next, schedule=schedule, min_interval=min_interval)
    if result.error is not None:
        raise StateValidationError(result.error.value, result.detail)
