"""Tests for the ledger service (token state reads and funding selection)."""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from conftest import TOKEN_SCRIPT, WALLET_SCRIPT, txid_of_hex
from habit_tracker.models.token import Outpoint
from habit_tracker.services.blockchain.bitcoin_rpc import BitcoinRpcClient
from habit_tracker.services.blockchain.ledger import LedgerService
from habit_tracker.services.exceptions import (
    MalformedResponseError,
    MalformedTransactionError,
    NoFundingAvailableError,
)
from habit_tracker.services.tracker.codec import encode_state

APP_ID = "n/" + "cd" * 32 + "/" + "ef" * 32


def utxo(txid: str, vout: int, btc: str, address="bcrt1qfunding", **extra) -> dict:
    return {"txid": txid, "vout": vout, "amount": Decimal(btc), "address": address, **extra}


@pytest.fixture
def rpc():
    return AsyncMock(spec=BitcoinRpcClient)


@pytest.fixture
def spell_reader():
    return AsyncMock()


@pytest.mark.asyncio
async def test_get_current_state(rpc, spell_reader, make_tx, token_state):
    token_tx = make_tx([("e0" * 32, 0)], [(1000, TOKEN_SCRIPT), (5000, WALLET_SCRIPT)])
    token = Outpoint(txid=txid_of_hex(token_tx), vout=0)
    rpc.get_raw_transaction_hex.return_value = token_tx
    spell_reader.show_spell.return_value = {
        "version": 8,
        "apps": {"$0000": APP_ID},
        "outs": [{"charms": {"$0000": encode_state(token_state)}}],
    }
    ledger = LedgerService(rpc, spell_reader)

    current = await ledger.get_current_state(token)

    assert current.state == token_state
    assert current.app_identity == APP_ID
    assert current.payload == encode_state(token_state)
    assert current.raw_tx_hex == token_tx
    assert current.prevout.outpoint == token
    assert current.prevout.script_pubkey_hex == TOKEN_SCRIPT.hex()
    assert current.prevout.amount_sats == 1000
    rpc.get_raw_transaction_hex.assert_awaited_once_with(token.txid)
    spell_reader.show_spell.assert_awaited_once_with(token_tx)


@pytest.mark.asyncio
async def test_get_current_state_without_charm(rpc, spell_reader, make_tx):
    rpc.get_raw_transaction_hex.return_value = make_tx([("e0" * 32, 0)], [(1000, TOKEN_SCRIPT)])
    spell_reader.show_spell.return_value = {"version": 8, "outs": []}
    ledger = LedgerService(rpc, spell_reader)

    with pytest.raises(MalformedResponseError):
        await ledger.get_current_state(Outpoint(txid="b2" * 32, vout=0))


@pytest.mark.asyncio
async def test_get_current_state_missing_output(rpc, spell_reader, make_tx, token_state):
    token_tx = make_tx([("e0" * 32, 0)], [(1000, TOKEN_SCRIPT)])
    rpc.get_raw_transaction_hex.return_value = token_tx
    spell_reader.show_spell.return_value = {
        "outs": [{"charms": {"$0000": encode_state(token_state)}}]
    }
    ledger = LedgerService(rpc, spell_reader)

    with pytest.raises(MalformedTransactionError):
        await ledger.get_current_state(Outpoint(txid=txid_of_hex(token_tx), vout=3))


@pytest.mark.asyncio
async def test_funding_skips_token_outputs_and_excluded(rpc, spell_reader):
    token = Outpoint(txid="b2" * 32, vout=0)
    rpc.list_unspent.return_value = [
        utxo("b1" * 32, 0, "0.00001000"),  # another token output
        utxo(token.txid, token.vout, "0.00050000"),  # the token being spent
        utxo("b3" * 32, 2, "0.00001500"),  # below minimum
        utxo("b4" * 32, 1, "0.00100000", address="bcrt1qchange"),
    ]
    ledger = LedgerService(rpc, spell_reader)

    funding = await ledger.list_spendable_funding(2000, exclude=token)

    assert funding.outpoint == Outpoint(txid="b4" * 32, vout=1)
    assert funding.value == 100_000
    assert funding.address == "bcrt1qchange"


@pytest.mark.asyncio
async def test_funding_skips_unspendable_and_addressless(rpc, spell_reader):
    rpc.list_unspent.return_value = [
        utxo("c1" * 32, 0, "0.01", spendable=False),
        utxo("c2" * 32, 0, "0.01", address=None),
        utxo("c3" * 32, 0, "0.01"),
    ]
    ledger = LedgerService(rpc, spell_reader)

    funding = await ledger.list_spendable_funding(2000)

    assert funding.outpoint.txid == "c3" * 32


@pytest.mark.asyncio
async def test_no_funding_returns_address_to_fund(rpc, spell_reader):
    rpc.list_unspent.return_value = [utxo("b1" * 32, 0, "0.00001000")]
    rpc.get_new_address.return_value = "bcrt1qfundme"
    rpc.get_chain.return_value = "regtest"
    ledger = LedgerService(rpc, spell_reader)

    with pytest.raises(NoFundingAvailableError) as exc_info:
        await ledger.list_spendable_funding(2000)

    assert exc_info.value.address == "bcrt1qfundme"
    assert exc_info.value.network == "regtest"
    assert "Fund this address: bcrt1qfundme" in str(exc_info.value)
