"""Settlement entities - signing plan and broadcast results for a commit/spell pair."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from habit_tracker.models.token import Outpoint, Prevout
from habit_tracker.models.transition import TransitionKind

COMMIT_TX_INDEX = 0
SPELL_TX_INDEX = 1


class Network(str, Enum):
    """Target network class; decides the broadcast strategy."""

    TEST = "test"
    PRODUCTION = "production"

    @classmethod
    def from_chain(cls, chain: str) -> "Network":
        """Map a node chain name (``getblockchaininfo.chain``) to a network class.

        Only regtest supports package relay for our pair; testnets and main
        are treated as production.
        """
        return cls.TEST if chain.strip().lower() == "regtest" else cls.PRODUCTION


@dataclass(frozen=True)
class SigningDescriptor:
    """One transaction input that must be signed."""

    tx_index: int  # 0 = commit, 1 = spell
    input_index: int
    prevout: Prevout


@dataclass(frozen=True)
class SettlementPlan:
    """Two unsigned transactions plus the ordered signing descriptors."""

    kind: TransitionKind
    commit_tx_hex: str
    spell_tx_hex: str
    commit_txid: str
    descriptors: tuple[SigningDescriptor, ...]

    def prevouts_for(self, tx_index: int) -> list[Prevout]:
        """Prevouts for one transaction, in input order."""
        return [
            d.prevout
            for d in sorted(self.descriptors, key=lambda d: d.input_index)
            if d.tx_index == tx_index
        ]


@dataclass(frozen=True)
class SignResult:
    """Outcome of a wallet signing call."""

    hex: str
    complete: bool
    errors: list = field(default_factory=list)


@dataclass(frozen=True)
class PackageTxResult:
    """Per-transaction outcome of a package submission."""

    txid: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class SettlementResult:
    """Identifiers of a broadcast commit/spell pair.

    Broadcast does not mean confirmed; callers poll the ledger before
    treating the new token state as authoritative.
    """

    commit_txid: str
    spell_txid: str
    network: Network

    @property
    def token_outpoint(self) -> Outpoint:
        return Outpoint(txid=self.spell_txid, vout=0)
