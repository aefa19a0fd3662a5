"""Port definitions for external collaborators.

Responsibilities:
  - Define the narrow interface each collaborator offers the core.
Must not:
  - Implement logic; interfaces only.

Adapters live in habit_tracker.services.blockchain and
habit_tracker.services.prover; tests substitute fakes per flow.
"""

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence

from habit_tracker.models.settlement import PackageTxResult, SignResult
from habit_tracker.models.token import FundingReference, Outpoint, Prevout, TokenState
from habit_tracker.models.transition import TransitionRequest


@dataclass(frozen=True)
class CurrentToken:
    """Token state as read from the ledger, plus what spending it requires."""

    state: TokenState
    prevout: Prevout
    raw_tx_hex: str
    app_identity: Optional[str] = None
    payload: Optional[dict[str, Any]] = None


class LedgerQuery(Protocol):
    async def get_current_state(self, token: Outpoint) -> CurrentToken:
        ...

    async def list_spendable_funding(
        self, min_value: int, exclude: Optional[Outpoint] = None
    ) -> FundingReference:
        ...


class Prover(Protocol):
    async def prove(
        self, request: TransitionRequest, prev_tx_hexes: Sequence[str]
    ) -> tuple[str, str]:
        ...


class SpellReader(Protocol):
    async def show_spell(self, tx_hex: str) -> dict:
        ...


class Wallet(Protocol):
    async def sign(self, tx_hex: str, prevouts: Sequence[Prevout]) -> SignResult:
        ...


class Broadcaster(Protocol):
    async def submit_package(self, tx_hexes: Sequence[str]) -> list[PackageTxResult]:
        ...

    async def submit_single(self, tx_hex: str) -> str:
        ...
