"""pytest fixtures for habit tracker tests.

Provides:
- settings: Settings in the test environment (no RPC credentials needed)
- make_tx: Builds raw transactions with python-bitcoinlib
- genesis_pair / update_pair: Unsigned commit/spell pairs as a prover returns them
- token_state / funding: Sample domain values
"""

import os

os.environ.setdefault("APP_ENV", "test")

import pytest  # noqa: E402
from bitcoin.core import (  # noqa: E402
    CMutableTransaction,
    CMutableTxIn,
    CMutableTxOut,
    COutPoint,
    CScript,
    CTransaction,
    b2lx,
    lx,
)

from habit_tracker.core.config import Settings  # noqa: E402
from habit_tracker.models.token import (  # noqa: E402
    FundingReference,
    Outpoint,
    Prevout,
    TokenState,
)

FUNDING_TXID = "a1" * 32
TOKEN_TXID = "b2" * 32
OWNER_ADDRESS = "bcrt1qowner0000000000000000000000000000000"

# P2WPKH and P2TR-shaped scripts; content is irrelevant to the code under test
WALLET_SCRIPT = bytes.fromhex("0014" + "11" * 20)
COMMIT_SCRIPT = bytes.fromhex("5120" + "22" * 32)
TOKEN_SCRIPT = bytes.fromhex("0014" + "33" * 20)


def build_tx(inputs: list[tuple[str, int]], outputs: list[tuple[int, bytes]]) -> str:
    """Serialize an unsigned transaction spending ``inputs`` into ``outputs``."""
    vin = [CMutableTxIn(COutPoint(lx(txid), vout)) for txid, vout in inputs]
    vout = [CMutableTxOut(value, CScript(script)) for value, script in outputs]
    return CMutableTransaction(vin, vout).serialize().hex()


def txid_of_hex(tx_hex: str) -> str:
    return b2lx(CTransaction.deserialize(bytes.fromhex(tx_hex)).GetTxid())


@pytest.fixture
def settings() -> Settings:
    """Settings for tests: no .env, no cookie file, test environment."""
    return Settings(
        _env_file=None,
        APP_ENV="test",
        BITCOIN_RPC_URL="http://127.0.0.1:18443",
        BITCOIN_RPC_COOKIE_FILE="/nonexistent/.cookie",
        BITCOIN_WALLET="test",
    )


@pytest.fixture
def make_tx():
    return build_tx


@pytest.fixture
def funding() -> FundingReference:
    return FundingReference(
        outpoint=Outpoint(txid=FUNDING_TXID, vout=1),
        value=50_000,
        address=OWNER_ADDRESS,
    )


@pytest.fixture
def funding_prevout(funding) -> Prevout:
    return Prevout(outpoint=funding.outpoint, amount_sats=funding.value)


@pytest.fixture
def token_state() -> TokenState:
    """Token with 5 sessions, last updated at t=1_000_000."""
    return TokenState(
        description="Tracking habit: Morning Meditation",
        owner=OWNER_ADDRESS,
        subject_name="Morning Meditation",
        progress_count=5,
        created_at=900_000,
        last_updated_at=1_000_000,
        badges=("First Strike", "Kindling"),
    )


@pytest.fixture
def token_prevout() -> Prevout:
    return Prevout(
        outpoint=Outpoint(txid=TOKEN_TXID, vout=0),
        script_pubkey_hex=TOKEN_SCRIPT.hex(),
        amount_sats=1000,
    )


@pytest.fixture
def genesis_pair(funding) -> tuple[str, str]:
    """(commit_hex, spell_hex) for a genesis transition."""
    commit_hex = build_tx([(FUNDING_TXID, funding.outpoint.vout)], [(48_800, COMMIT_SCRIPT)])
    spell_hex = build_tx(
        [(txid_of_hex(commit_hex), 0)],
        [(1000, WALLET_SCRIPT), (47_300, WALLET_SCRIPT)],
    )
    return commit_hex, spell_hex


@pytest.fixture
def update_pair(funding) -> tuple[str, str]:
    """(commit_hex, spell_hex) for an update spending TOKEN_TXID:0."""
    commit_hex = build_tx([(FUNDING_TXID, funding.outpoint.vout)], [(48_800, COMMIT_SCRIPT)])
    spell_hex = build_tx(
        [(TOKEN_TXID, 0), (txid_of_hex(commit_hex), 0)],
        [(1000, WALLET_SCRIPT), (48_300, WALLET_SCRIPT)],
    )
    return commit_hex, spell_hex
