"""Token state - the habit tracker NFT payload and ledger references."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from habit_tracker.services.exceptions import MalformedOutpointError

# Sats locked in every token output
TOKEN_CARRY_SATS = 1000

# Fee allowance per transaction of the commit/spell pair
TX_FEE_ALLOWANCE_SATS = 500

# Minimum funding value: two transaction fees plus the token carry value
MIN_FUNDING_SATS = TOKEN_CARRY_SATS + 2 * TX_FEE_ALLOWANCE_SATS

TOKEN_DISPLAY_NAME = "🗡️ Habit Tracker"


class TokenState(BaseModel):
    """Immutable NFT payload committed to a ledger output."""

    model_config = ConfigDict(frozen=True)

    name: str = TOKEN_DISPLAY_NAME
    description: str = ""
    owner: str = Field(..., min_length=1)
    subject_name: str = Field(..., min_length=1)
    progress_count: int = Field(default=0, ge=0)
    created_at: Optional[int] = None
    last_updated_at: Optional[int] = None
    badges: tuple[str, ...] = ()


class Outpoint(BaseModel):
    """Reference to a transaction output (``txid:vout``)."""

    model_config = ConfigDict(frozen=True)

    txid: str
    vout: int = Field(..., ge=0)

    @field_validator("txid")
    @classmethod
    def validate_txid(cls, v: str) -> str:
        """Validate txid is 64 hex characters, normalized to lowercase."""
        if len(v) != 64:
            raise ValueError("txid must be 64 hexadecimal characters")
        try:
            int(v, 16)
        except ValueError:
            raise ValueError("txid must contain valid hexadecimal characters")
        return v.lower()

    @classmethod
    def parse(cls, value: str) -> "Outpoint":
        """Parse ``txid:vout`` notation.

        Raises:
            MalformedOutpointError: If the string is not a valid outpoint
        """
        txid, sep, vout = value.strip().partition(":")
        if not sep or not vout.isdigit():
            raise MalformedOutpointError(f"Invalid UTXO format, expected txid:vout, got {value!r}")
        try:
            return cls(txid=txid, vout=int(vout))
        except ValidationError as e:
            raise MalformedOutpointError(f"Invalid UTXO {value!r}: {e.errors()[0]['msg']}") from e

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"


class FundingReference(BaseModel):
    """Spendable output used to pay for a transition."""

    model_config = ConfigDict(frozen=True)

    outpoint: Outpoint
    value: int = Field(..., ge=0)
    address: str


class Prevout(BaseModel):
    """Output being spent by a transaction input, as needed for signing.

    ``script_pubkey_hex`` is empty when only the signer's wallet knows it
    (for example the funding output of an external signer).
    """

    model_config = ConfigDict(frozen=True)

    outpoint: Outpoint
    script_pubkey_hex: str = ""
    amount_sats: int = Field(..., ge=0)
