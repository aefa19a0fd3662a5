"""Settlement coordinator for commit/spell transaction pairs.

Drives a settlement plan through a linear state machine with no internal
retries:

    BUILT -> COMMIT_SIGNED -> SPELL_SIGNED -> BROADCAST -> CONFIRMED_PENDING

Broadcast strategy is chosen once, from the target network:
- Network.TEST: both transactions submitted as one atomic package; a
  rejection of either fails the whole settlement.
- Network.PRODUCTION: commit first, then spell. The pair is not atomic, so a
  spell failure after the commit was accepted is reported as
  PartialSettlementError carrying the commit txid.
  A commit submission that ends without a verdict from the node (connection
  lost, unreadable reply) raises CommitOutcomeUnknownError: the commit may be
  in the mempool, so the caller must look it up before re-funding.

Confirmation tracking is out of scope: the result only means "broadcast".
"""

from enum import Enum

import structlog

from habit_tracker.models.settlement import (
    COMMIT_TX_INDEX,
    SPELL_TX_INDEX,
    Network,
    SettlementPlan,
    SettlementResult,
)
from habit_tracker.services.exceptions import (
    BroadcastRejectedError,
    CommitOutcomeUnknownError,
    LedgerRpcError,
    MalformedResponseError,
    PackageRejectedError,
    PartialSettlementError,
    ServiceError,
    SigningIncompleteError,
)
from habit_tracker.services.tracker.ports import Broadcaster, Wallet
from habit_tracker.services.tracker.signing import decode_transaction, txid_of

logger = structlog.get_logger()


class SettlementStage(str, Enum):
    """Settlement progress."""

    BUILT = "built"
    COMMIT_SIGNED = "commit_signed"
    SPELL_SIGNED = "spell_signed"
    BROADCAST = "broadcast"
    CONFIRMED_PENDING = "confirmed_pending"


class SettlementCoordinator:
    """Signs and broadcasts a commit/spell pair."""

    def __init__(self, wallet: Wallet, broadcaster: Broadcaster):
        """
        Initialize settlement coordinator.

        Args:
            wallet: Wallet signing collaborator
            broadcaster: Transaction broadcast collaborator
        """
        self.wallet = wallet
        self.broadcaster = broadcaster

    async def settle(self, plan: SettlementPlan, network: Network) -> SettlementResult:
        """Sign both transactions and broadcast them.

        Args:
            plan: Unsigned transactions and signing descriptors
            network: Target network class (selects broadcast strategy)

        Returns:
            SettlementResult with both txids

        Raises:
            SigningIncompleteError: Wallet reported missing signatures
            PackageRejectedError: Package rejected (test network)
            BroadcastRejectedError: Commit rejected (production network)
            CommitOutcomeUnknownError: Commit submission ended without a verdict
            PartialSettlementError: Commit accepted, spell failed (production network)
        """
        log = logger.bind(
            commit_txid=plan.commit_txid, kind=plan.kind.value, network=network.value
        )
        log.info("settlement.started", stage=SettlementStage.BUILT.value)

        signed_commit = await self.wallet.sign(
            plan.commit_tx_hex, plan.prevouts_for(COMMIT_TX_INDEX)
        )
        if not signed_commit.complete:
            log.error(
                "settlement.signing_incomplete",
                tx_index=COMMIT_TX_INDEX,
                errors=signed_commit.errors,
            )
            raise SigningIncompleteError(COMMIT_TX_INDEX, signed_commit.errors)
        log.info("settlement.commit_signed", stage=SettlementStage.COMMIT_SIGNED.value)

        signed_spell = await self.wallet.sign(plan.spell_tx_hex, plan.prevouts_for(SPELL_TX_INDEX))
        if not signed_spell.complete:
            log.error(
                "settlement.signing_incomplete",
                tx_index=SPELL_TX_INDEX,
                errors=signed_spell.errors,
            )
            raise SigningIncompleteError(SPELL_TX_INDEX, signed_spell.errors)
        log.info("settlement.spell_signed", stage=SettlementStage.SPELL_SIGNED.value)

        return await self._broadcast(signed_commit.hex, signed_spell.hex, network)

    async def broadcast_signed(
        self, signed_commit_hex: str, signed_spell_hex: str, network: Network
    ) -> SettlementResult:
        """Broadcast a pair signed elsewhere (external signer flow).

        Raises:
            MalformedTransactionError: If either hex is not a transaction
        """
        decode_transaction(signed_commit_hex)
        decode_transaction(signed_spell_hex)
        return await self._broadcast(signed_commit_hex, signed_spell_hex, network)

    async def _broadcast(
        self, commit_hex: str, spell_hex: str, network: Network
    ) -> SettlementResult:
        if network is Network.TEST:
            commit_txid, spell_txid = await self._submit_package(commit_hex, spell_hex)
        else:
            commit_txid, spell_txid = await self._submit_sequential(commit_hex, spell_hex)

        logger.info(
            "settlement.broadcast",
            stage=SettlementStage.BROADCAST.value,
            network=network.value,
            commit_txid=commit_txid,
            spell_txid=spell_txid,
        )
        logger.info(
            "settlement.awaiting_confirmation",
            stage=SettlementStage.CONFIRMED_PENDING.value,
            token_utxo=f"{spell_txid}:0",
        )
        return SettlementResult(commit_txid=commit_txid, spell_txid=spell_txid, network=network)

    async def _submit_package(self, commit_hex: str, spell_hex: str) -> tuple[str, str]:
        logger.info("settlement.submitting_package")
        try:
            results = await self.broadcaster.submit_package([commit_hex, spell_hex])
        except LedgerRpcError as e:
            # Rejected as a whole; neither transaction entered the mempool
            logger.error("settlement.package_rejected", index=COMMIT_TX_INDEX, reason=e.message)
            raise PackageRejectedError(COMMIT_TX_INDEX, e.message) from e

        for index, result in enumerate(results):
            if result.error:
                logger.error("settlement.package_rejected", index=index, reason=result.error)
                raise PackageRejectedError(index, result.error)

        if len(results) != 2 or not all(r.txid for r in results):
            raise MalformedResponseError(
                f"Package submission returned {len(results)} results, expected 2 txids"
            )
        return results[0].txid, results[1].txid  # type: ignore[return-value]

    async def _submit_sequential(self, commit_hex: str, spell_hex: str) -> tuple[str, str]:
        logger.info("settlement.submitting_sequential")
        try:
            commit_txid = await self.broadcaster.submit_single(commit_hex)
        except LedgerRpcError as e:
            logger.error("settlement.commit_rejected", reason=e.message)
            raise BroadcastRejectedError(COMMIT_TX_INDEX, e.message) from e
        except ServiceError as e:
            # No verdict from the node: the commit may be in its mempool already
            commit_txid = txid_of(decode_transaction(commit_hex))
            logger.error("settlement.commit_outcome_unknown", commit_txid=commit_txid, error=str(e))
            raise CommitOutcomeUnknownError(commit_txid, str(e)) from e
        logger.info("settlement.commit_broadcast", commit_txid=commit_txid)

        try:
            spell_txid = await self.broadcaster.submit_single(spell_hex)
        except ServiceError as e:
            logger.error(
                "settlement.partial",
                commit_txid=commit_txid,
                error=str(e),
                message="Commit broadcast, spell not; complete the spell, do not re-spend funding",
            )
            raise PartialSettlementError(commit_txid, str(e)) from e

        return commit_txid, spell_txid
