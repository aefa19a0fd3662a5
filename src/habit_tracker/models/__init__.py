"""Domain entities for habit tokens and their settlement.

All values are immutable: token states, outpoints and requests are frozen
pydantic models; settlement plans and results are frozen dataclasses.
"""

from habit_tracker.models.settlement import (
    Network,
    PackageTxResult,
    SettlementPlan,
    SettlementResult,
    SigningDescriptor,
    SignResult,
)
from habit_tracker.models.token import FundingReference, Outpoint, Prevout, TokenState
from habit_tracker.models.transition import TransitionKind, TransitionRequest

__all__ = [
    "TokenState",
    "Outpoint",
    "FundingReference",
    "Prevout",
    "TransitionKind",
    "TransitionRequest",
    "Network",
    "SigningDescriptor",
    "SettlementPlan",
    "SignResult",
    "PackageTxResult",
    "SettlementResult",
]
