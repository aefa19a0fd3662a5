"""Transition request - one proposed move of a token to its successor state."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from habit_tracker.models.token import FundingReference, Outpoint, TokenState


class TransitionKind(str, Enum):
    """Whether a transition creates the token or advances it."""

    GENESIS = "genesis"
    UPDATE = "update"


class TransitionRequest(BaseModel):
    """Declarative request handed to the prover.

    Created per update attempt, validated, consumed by the prover call,
    then discarded.
    """

    model_config = ConfigDict(frozen=True)

    previous: Optional[TokenState] = None
    previous_outpoint: Optional[Outpoint] = None
    next: TokenState
    funding: FundingReference
    fee_rate: float = Field(default=2.0, gt=0)
    app_identity: str
    # Charm payload as committed on the spent output (updates)
    previous_payload: Optional[dict[str, Any]] = None

    @property
    def kind(self) -> TransitionKind:
        return TransitionKind.GENESIS if self.previous is None else TransitionKind.UPDATE
