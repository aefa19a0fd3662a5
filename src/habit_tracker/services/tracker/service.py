"""Habit token service - end-to-end token transition flows.

Flows:
- create_token / advance_token: node-wallet flow (build, prove, sign, broadcast)
- build_unsigned_create / build_unsigned_update: external-signer flow; returns
  the unsigned pair plus signing descriptors for the caller's wallet
- broadcast_signed: broadcast a pair signed elsewhere
- view_token: read-only

Only one transition per token may be in flight; a second one fails fast with
TransitionInProgressError instead of waiting. Once settlement starts it runs
under asyncio.shield so a cancelled caller cannot abandon the spell broadcast
after the commit went out.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Optional

import structlog

from habit_tracker.contract import load_contract
from habit_tracker.core.config import Settings
from habit_tracker.models.settlement import Network, SettlementPlan, SettlementResult
from habit_tracker.models.token import MIN_FUNDING_SATS, FundingReference, Outpoint, Prevout
from habit_tracker.services.blockchain.bitcoin_rpc import BitcoinRpcClient
from habit_tracker.services.blockchain.ledger import LedgerService
from habit_tracker.services.exceptions import TransitionInProgressError
from habit_tracker.services.prover.charms import CharmsSpellReader, select_prover
from habit_tracker.services.tracker.descriptor import TransitionDescriptorBuilder
from habit_tracker.services.tracker.ports import CurrentToken, LedgerQuery, Prover
from habit_tracker.services.tracker.settlement import SettlementCoordinator
from habit_tracker.services.tracker.signing import build_signing_plan

logger = structlog.get_logger()


@dataclass(frozen=True)
class UnsignedTransition:
    """Unsigned commit/spell pair for an external signer."""

    plan: SettlementPlan
    previous_count: Optional[int]
    next_count: int


class HabitTokenService:
    """Coordinates ledger reads, proving, signing and broadcast for habit tokens."""

    def __init__(
        self,
        ledger: LedgerQuery,
        prover: Prover,
        builder: TransitionDescriptorBuilder,
        settlement: SettlementCoordinator,
        network: Network,
    ):
        """
        Initialize habit token service.

        Args:
            ledger: Ledger query collaborator (token state, funding selection)
            prover: Prover returning the unsigned commit/spell pair
            builder: Transition descriptor builder
            settlement: Settlement coordinator (signing + broadcast)
            network: Target network, resolved once at startup
        """
        self.ledger = ledger
        self.prover = prover
        self.builder = builder
        self.settlement = settlement
        self.network = network
        self._locks: dict[str, asyncio.Lock] = {}
        # Shielded settlements in flight, by the output they spend
        self._settling: dict[str, asyncio.Future] = {}

    def is_busy(self, key: Outpoint) -> bool:
        """Whether a transition spending ``key`` is in flight."""
        name = str(key)
        lock = self._locks.get(name)
        return (lock is not None and lock.locked()) or name in self._settling

    @asynccontextmanager
    async def _exclusive(self, key: Outpoint) -> AsyncIterator[None]:
        """Hold the per-output lock for one transition; fail fast if taken."""
        name = str(key)
        if self.is_busy(key):
            logger.warning("service.transition_in_progress", utxo=name)
            raise TransitionInProgressError(name)

        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            try:
                yield
            finally:
                self._locks.pop(name, None)

    async def _settle(self, plan: SettlementPlan, key: Outpoint) -> SettlementResult:
        return await self._shielded(self.settlement.settle(plan, self.network), str(key))

    async def _shielded(
        self, settlement: Awaitable[SettlementResult], name: Optional[str]
    ) -> SettlementResult:
        """Run a settlement under asyncio.shield.

        When ``name`` is given that output stays busy until settlement
        finishes, even if the caller is cancelled and leaves ``_exclusive``.
        """
        task = asyncio.ensure_future(settlement)
        if name is not None:
            self._settling[name] = task
        task.add_done_callback(lambda done: self._settlement_done(name, done))
        return await asyncio.shield(task)

    def _settlement_done(self, name: Optional[str], task: asyncio.Future) -> None:
        if name is not None:
            self._settling.pop(name, None)
        if task.cancelled():
            logger.warning("service.settlement_cancelled", utxo=name)
            return

        error = task.exception()
        if error is not None:
            logger.error(
                "service.settlement_failed",
                utxo=name,
                error=str(error),
                error_type=type(error).__name__,
            )
            return

        logger.info(
            "service.settlement_finished", utxo=name, token=str(task.result().token_outpoint)
        )

    async def create_token(self, habit_name: str) -> SettlementResult:
        """Create a new habit token funded and owned by the node wallet.

        Raises:
            NoFundingAvailableError: Wallet has no usable funding output
            ProverError: Prover rejected the spell
            SigningIncompleteError / BroadcastRejectedError: Settlement failed
        """
        funding = await self.ledger.list_spendable_funding(MIN_FUNDING_SATS)

        async with self._exclusive(funding.outpoint):
            request = self.builder.build(
                previous=None,
                subject_name=habit_name,
                owner=funding.address,
                funding=funding,
            )
            commit_hex, spell_hex = await self.prover.prove(request, [])
            plan = build_signing_plan(commit_hex, spell_hex, funding=_funding_prevout(funding))

            logger.info("service.creating_token", habit=habit_name, commit_txid=plan.commit_txid)
            result = await self._settle(plan, funding.outpoint)

        logger.info(
            "service.token_created",
            habit=habit_name,
            token=str(result.token_outpoint),
            network=result.network.value,
        )
        return result

    async def advance_token(self, token: Outpoint) -> SettlementResult:
        """Record one more session on an existing token.

        The owner is carried from the current state; the funding output's
        address only receives change.

        Raises:
            TransitionInProgressError: Another transition for this token is in flight
            StateValidationError: Update too soon after the previous one
            NoFundingAvailableError: Wallet has no usable funding output
        """
        async with self._exclusive(token):
            current = await self.ledger.get_current_state(token)
            funding = await self.ledger.list_spendable_funding(MIN_FUNDING_SATS, exclude=token)

            request = self.builder.build(
                previous=current.state,
                subject_name=current.state.subject_name,
                owner=current.state.owner,
                funding=funding,
                previous_outpoint=token,
                app_identity=current.app_identity,
                previous_payload=current.payload,
            )
            commit_hex, spell_hex = await self.prover.prove(request, [current.raw_tx_hex])
            plan = build_signing_plan(
                commit_hex,
                spell_hex,
                funding=_funding_prevout(funding),
                previous_token=current.prevout,
            )

            logger.info(
                "service.advancing_token",
                token=str(token),
                sessions_from=current.state.progress_count,
                sessions_to=request.next.progress_count,
            )
            result = await self._settle(plan, token)

        logger.info(
            "service.token_advanced",
            previous_token=str(token),
            token=str(result.token_outpoint),
            sessions=request.next.progress_count,
            badges=list(request.next.badges),
        )
        return result

    async def view_token(self, token: Outpoint) -> CurrentToken:
        return await self.ledger.get_current_state(token)

    async def build_unsigned_create(
        self, habit_name: str, address: str, funding_outpoint: Outpoint, funding_value: int
    ) -> UnsignedTransition:
        """Build an unsigned genesis pair funded by the caller's own output."""
        funding = FundingReference(outpoint=funding_outpoint, value=funding_value, address=address)

        async with self._exclusive(funding_outpoint):
            request = self.builder.build(
                previous=None, subject_name=habit_name, owner=address, funding=funding
            )
            commit_hex, spell_hex = await self.prover.prove(request, [])

        plan = build_signing_plan(commit_hex, spell_hex, funding=_funding_prevout(funding))
        logger.info("service.unsigned_create_built", habit=habit_name, commit_txid=plan.commit_txid)
        return UnsignedTransition(plan=plan, previous_count=None, next_count=0)

    async def build_unsigned_update(
        self,
        token: Outpoint,
        user_address: str,
        funding_outpoint: Outpoint,
        funding_value: int,
    ) -> UnsignedTransition:
        """Build an unsigned update pair funded by the caller's own output.

        ``user_address`` receives change; the token stays with its current owner.
        """
        funding = FundingReference(
            outpoint=funding_outpoint, value=funding_value, address=user_address
        )

        async with self._exclusive(token):
            current = await self.ledger.get_current_state(token)
            request = self.builder.build(
                previous=current.state,
                subject_name=current.state.subject_name,
                owner=current.state.owner,
                funding=funding,
                previous_outpoint=token,
                app_identity=current.app_identity,
                previous_payload=current.payload,
            )
            commit_hex, spell_hex = await self.prover.prove(request, [current.raw_tx_hex])

        plan = build_signing_plan(
            commit_hex,
            spell_hex,
            funding=_funding_prevout(funding),
            previous_token=current.prevout,
        )
        logger.info(
            "service.unsigned_update_built",
            token=str(token),
            sessions_from=current.state.progress_count,
            sessions_to=request.next.progress_count,
        )
        return UnsignedTransition(
            plan=plan,
            previous_count=current.state.progress_count,
            next_count=request.next.progress_count,
        )

    async def broadcast_signed(self, commit_tx_hex: str, spell_tx_hex: str) -> SettlementResult:
        return await self._shielded(
            self.settlement.broadcast_signed(commit_tx_hex, spell_tx_hex, self.network), None
        )


def _funding_prevout(funding: FundingReference) -> Prevout:
    # Script left empty: the signing wallet owns the output and resolves it
    return Prevout(outpoint=funding.outpoint, amount_sats=funding.value)


async def resolve_network(settings: Settings, rpc: BitcoinRpcClient) -> Network:
    """Resolve the target network from NETWORK, or ask the node."""
    chain = settings.network or await rpc.get_chain()
    network = Network.from_chain(chain)
    logger.info("service.network_resolved", chain=chain, network=network.value)
    return network


async def create_service(settings: Settings) -> HabitTokenService:
    """Wire a HabitTokenService from settings.

    Raises:
        ContractNotFoundError: Contract artifacts not built
        LedgerConnectionError: Node unreachable while resolving the network
    """
    contract = load_contract(settings.contract_wasm_path, settings.contract_vk_path)
    rpc = BitcoinRpcClient(
        settings.wallet_rpc_url,
        auth=settings.rpc_auth(),
        timeout=settings.bitcoin_rpc_timeout_seconds,
    )
    network = await resolve_network(settings, rpc)

    builder = TransitionDescriptorBuilder(
        contract.vk,
        min_interval=settings.min_update_interval_seconds,
        fee_rate=settings.fee_rate,
    )
    prover = select_prover(network, settings, builder, contract)
    ledger = LedgerService(rpc, CharmsSpellReader(settings.charms_bin))

    return HabitTokenService(
        ledger=ledger,
        prover=prover,
        builder=builder,
        settlement=SettlementCoordinator(wallet=rpc, broadcaster=rpc),
        network=network,
    )
