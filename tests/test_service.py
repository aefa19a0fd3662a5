"""Tests for HabitTokenService flows with faked collaborators.

Tests cover:
- Node-wallet create/advance flows (prover inputs, signing plan, settlement)
- External-signer unsigned flows
- Single transition per token (TransitionInProgressError)
"""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from conftest import TOKEN_TXID
from habit_tracker.models.settlement import Network, SettlementResult
from habit_tracker.models.token import MIN_FUNDING_SATS, Outpoint
from habit_tracker.services.exceptions import StateValidationError, TransitionInProgressError
from habit_tracker.services.tracker.descriptor import TransitionDescriptorBuilder
from habit_tracker.services.tracker.ports import CurrentToken
from habit_tracker.services.tracker.service import HabitTokenService
from habit_tracker.services.tracker.settlement import SettlementCoordinator

VK = "f0" * 32
APP_ID = "n/" + "cd" * 32 + "/" + VK
TOKEN = Outpoint(txid=TOKEN_TXID, vout=0)
SETTLED = SettlementResult(commit_txid="c1" * 32, spell_txid="d1" * 32, network=Network.TEST)


@pytest.fixture
def ledger(token_state, token_prevout, funding):
    ledger = AsyncMock()
    ledger.get_current_state.return_value = CurrentToken(
        state=token_state,
        prevout=token_prevout,
        raw_tx_hex="0200prev",
        app_identity=APP_ID,
        payload={"owner": token_state.owner, "habit_name": "Morning Meditation", "v": 0},
    )
    ledger.list_spendable_funding.return_value = funding
    return ledger


@pytest.fixture
def settlement():
    settlement = AsyncMock(spec=SettlementCoordinator)
    settlement.settle.return_value = SETTLED
    settlement.broadcast_signed.return_value = SETTLED
    return settlement


def make_service(ledger, prover, settlement) -> HabitTokenService:
    return HabitTokenService(
        ledger=ledger,
        prover=prover,
        builder=TransitionDescriptorBuilder(VK),
        settlement=settlement,
        network=Network.TEST,
    )


@pytest.mark.asyncio
async def test_create_token(ledger, settlement, genesis_pair, funding):
    prover = AsyncMock()
    prover.prove.return_value = genesis_pair
    service = make_service(ledger, prover, settlement)

    result = await service.create_token("Morning Meditation")

    assert result == SETTLED
    ledger.list_spendable_funding.assert_awaited_once_with(MIN_FUNDING_SATS)
    request, prev_txs = prover.prove.await_args.args
    assert prev_txs == []
    assert request.next.owner == funding.address
    assert request.next.progress_count == 0
    plan, network = settlement.settle.await_args.args
    assert len(plan.descriptors) == 2
    assert network is Network.TEST


@pytest.mark.asyncio
async def test_advance_token(ledger, settlement, update_pair, token_state, token_prevout):
    prover = AsyncMock()
    prover.prove.return_value = update_pair
    service = make_service(ledger, prover, settlement)

    result = await service.advance_token(TOKEN)

    assert result.token_outpoint == Outpoint(txid="d1" * 32, vout=0)
    ledger.list_spendable_funding.assert_awaited_once_with(MIN_FUNDING_SATS, exclude=TOKEN)
    request, prev_txs = prover.prove.await_args.args
    assert prev_txs == ["0200prev"]
    assert request.previous == token_state
    assert request.previous_outpoint == TOKEN
    assert request.next.progress_count == token_state.progress_count + 1
    assert request.next.owner == token_state.owner
    assert request.app_identity == APP_ID
    assert request.previous_payload == ledger.get_current_state.return_value.payload
    plan, _ = settlement.settle.await_args.args
    assert len(plan.descriptors) == 3
    assert plan.descriptors[1].prevout == token_prevout


@pytest.mark.asyncio
async def test_advance_refused_before_proving(ledger, settlement, token_state, token_prevout):
    """An update proposed too soon never reaches the prover."""
    recent = token_state.model_copy(update={"last_updated_at": int(time.time())})
    ledger.get_current_state.return_value = CurrentToken(
        state=recent, prevout=token_prevout, raw_tx_hex="0200prev"
    )
    prover = AsyncMock()
    service = make_service(ledger, prover, settlement)

    with pytest.raises(StateValidationError):
        await service.advance_token(TOKEN)

    prover.prove.assert_not_called()
    settlement.settle.assert_not_called()


@pytest.mark.asyncio
async def test_second_transition_for_same_token_fails_fast(ledger, settlement, update_pair):
    release = asyncio.Event()
    started = asyncio.Event()

    async def slow_prove(request, prev_txs):
        started.set()
        await release.wait()
        return update_pair

    prover = AsyncMock()
    prover.prove.side_effect = slow_prove
    service = make_service(ledger, prover, settlement)

    first = asyncio.create_task(service.advance_token(TOKEN))
    await started.wait()

    with pytest.raises(TransitionInProgressError) as exc_info:
        await service.advance_token(TOKEN)
    assert exc_info.value.token == str(TOKEN)

    release.set()
    assert await first == SETTLED

    # Lock released: a later transition proceeds
    prover.prove.side_effect = None
    prover.prove.return_value = update_pair
    assert await service.advance_token(TOKEN) == SETTLED


@pytest.mark.asyncio
async def test_lock_released_after_failure(ledger, settlement, update_pair):
    prover = AsyncMock()
    prover.prove.side_effect = [RuntimeError("prover crashed"), update_pair]
    service = make_service(ledger, prover, settlement)

    with pytest.raises(RuntimeError):
        await service.advance_token(TOKEN)

    assert await service.advance_token(TOKEN) == SETTLED


@pytest.mark.asyncio
async def test_build_unsigned_create(ledger, settlement, genesis_pair, funding):
    prover = AsyncMock()
    prover.prove.return_value = genesis_pair
    service = make_service(ledger, prover, settlement)

    unsigned = await service.build_unsigned_create(
        habit_name="Running",
        address="bcrt1qbrowserwallet",
        funding_outpoint=funding.outpoint,
        funding_value=funding.value,
    )

    assert unsigned.previous_count is None
    assert unsigned.next_count == 0
    assert len(unsigned.plan.descriptors) == 2
    request, _ = prover.prove.await_args.args
    assert request.next.owner == "bcrt1qbrowserwallet"
    assert request.funding.address == "bcrt1qbrowserwallet"
    ledger.list_spendable_funding.assert_not_called()
    settlement.settle.assert_not_called()


@pytest.mark.asyncio
async def test_build_unsigned_update(ledger, settlement, update_pair, funding, token_state):
    prover = AsyncMock()
    prover.prove.return_value = update_pair
    service = make_service(ledger, prover, settlement)

    unsigned = await service.build_unsigned_update(
        token=TOKEN,
        user_address="bcrt1qchange",
        funding_outpoint=funding.outpoint,
        funding_value=funding.value,
    )

    assert unsigned.previous_count == 5
    assert unsigned.next_count == 6
    assert len(unsigned.plan.descriptors) == 3
    request, prev_txs = prover.prove.await_args.args
    assert prev_txs == ["0200prev"]
    assert request.next.owner == token_state.owner
    assert request.funding.address == "bcrt1qchange"
    settlement.settle.assert_not_called()


@pytest.mark.asyncio
async def test_broadcast_signed_uses_service_network(ledger, settlement):
    service = make_service(ledger, AsyncMock(), settlement)

    result = await service.broadcast_signed("aa", "bb")

    assert result == SETTLED
    settlement.broadcast_signed.assert_awaited_once_with("aa", "bb", Network.TEST)


@pytest.mark.asyncio
async def test_view_token(ledger, settlement, token_state):
    service = make_service(ledger, AsyncMock(), settlement)

    current = await service.view_token(TOKEN)

    assert current.state == token_state
    ledger.get_current_state.assert_awaited_once_with(TOKEN)


@pytest.mark.asyncio
async def test_cancelled_caller_keeps_token_busy_until_settled(ledger, settlement, update_pair):
    settle_started = asyncio.Event()
    release = asyncio.Event()

    async def slow_settle(plan, network):
        settle_started.set()
        await release.wait()
        return SETTLED

    prover = AsyncMock()
    prover.prove.return_value = update_pair
    settlement.settle.side_effect = slow_settle
    service = make_service(ledger, prover, settlement)

    first = asyncio.create_task(service.advance_token(TOKEN))
    await settle_started.wait()
    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first

    # Settlement continues in the background and still owns the token
    assert service.is_busy(TOKEN)
    with pytest.raises(TransitionInProgressError):
        await service.advance_token(TOKEN)
    assert settlement.settle.await_count == 1

    release.set()
    while service.is_busy(TOKEN):
        await asyncio.sleep(0)

    settlement.settle.side_effect = None
    assert await service.advance_token(TOKEN) == SETTLED
    assert settlement.settle.await_count == 2
