"""Transition descriptor builder.

Assembles the TransitionRequest for a genesis or update transition and
serialises it into the spell JSON the Charms prover consumes. The spell
format (version 8, ``apps``/``ins``/``outs``) is produced here and nowhere
else.
"""

import hashlib
import time
from typing import Any, Optional, Sequence

import structlog

from habit_tracker.models.token import (
    MIN_FUNDING_SATS,
    TOKEN_CARRY_SATS,
    TOKEN_DISPLAY_NAME,
    FundingReference,
    Outpoint,
    TokenState,
)
from habit_tracker.models.transition import TransitionRequest
from habit_tracker.services.exceptions import InsufficientFundsError, MissingOutputError
from habit_tracker.services.tracker.badges import DEFAULT_SCHEDULE, BadgeSchedule
from habit_tracker.services.tracker.codec import SPELL_APP_KEY, encode_state
from habit_tracker.services.tracker.validator import (
    MIN_UPDATE_INTERVAL_SECONDS,
    ValidationErrorCode,
    ensure_valid,
)

logger = structlog.get_logger()

SPELL_VERSION = 8


def make_app_identity(funding: Outpoint, vk: str, now: int) -> str:
    """Derive a fresh NFT app identity ``n/<identity>/<vk>`` for a new token."""
    seed = f"habit_tracker_{funding}_{now}"
    identity = hashlib.sha256(seed.encode("utf-8")).hexdigest()
    return f"n/{identity}/{vk}"


class TransitionDescriptorBuilder:
    """Builds and pre-flights transition requests for the prover."""

    def __init__(
        self,
        vk: str,
        schedule: BadgeSchedule = DEFAULT_SCHEDULE,
        min_interval: int = MIN_UPDATE_INTERVAL_SECONDS,
        fee_rate: float = 2.0,
    ):
        """
        Initialize descriptor builder.

        Args:
            vk: Verification key of the habit tracker contract
            schedule: Badge schedule stamped into new states
            min_interval: Minimum seconds between updates (pre-flight check)
            fee_rate: Fee rate in sat/vB passed to the prover
        """
        self.vk = vk
        self.schedule = schedule
        self.min_interval = min_interval
        self.fee_rate = fee_rate

    def build(
        self,
        previous: Optional[TokenState],
        subject_name: str,
        owner: str,
        funding: FundingReference,
        previous_outpoint: Optional[Outpoint] = None,
        app_identity: Optional[str] = None,
        previous_payload: Optional[dict[str, Any]] = None,
        now: Optional[int] = None,
    ) -> TransitionRequest:
        """Build the request moving ``previous`` to its successor.

        Args:
            previous: Current token state, or None to create a token
            subject_name: Habit being tracked
            owner: Owning ledger address of the next state
            funding: Funding output paying for both transactions
            previous_outpoint: Token output being spent (required for updates)
            app_identity: Existing app identity (updates); derived at genesis
            previous_payload: Charm payload exactly as committed on the spent output
                (updates); re-encoded from ``previous`` when absent
            now: Unix timestamp to stamp (default: current time)

        Returns:
            Validated TransitionRequest

        Raises:
            InsufficientFundsError: Funding value below MIN_FUNDING_SATS
            MissingOutputError: Update without the token output to spend
            StateValidationError: Proposed successor fails the contract rules
        """
        if funding.value < MIN_FUNDING_SATS:
            raise InsufficientFundsError(have=funding.value, need=MIN_FUNDING_SATS)

        timestamp = int(time.time()) if now is None else now

        if previous is None:
            next_state = TokenState(
                name=TOKEN_DISPLAY_NAME,
                description=f"Tracking habit: {subject_name}",
                owner=owner,
                subject_name=subject_name,
                progress_count=0,
                created_at=timestamp,
                badges=self.schedule.badges_for(0),
            )
            identity = app_identity or make_app_identity(funding.outpoint, self.vk, timestamp)
        else:
            if previous_outpoint is None:
                raise MissingOutputError(
                    ValidationErrorCode.MISSING_OUTPUT.value,
                    "Update requires the token output being spent",
                )
            count = previous.progress_count + 1
            next_state = TokenState(
                name=previous.name or TOKEN_DISPLAY_NAME,
                description=f"Tracking habit: {subject_name}",
                owner=owner,
                subject_name=subject_name,
                progress_count=count,
                created_at=previous.created_at,
                last_updated_at=timestamp,
                badges=self.schedule.badges_for(count),
            )
            identity = app_identity or make_app_identity(previous_outpoint, self.vk, timestamp)

        ensure_valid(previous, next_state, schedule=self.schedule, min_interval=self.min_interval)

        request = TransitionRequest(
            previous=previous,
            previous_outpoint=previous_outpoint,
            next=next_state,
            funding=funding,
            fee_rate=self.fee_rate,
            app_identity=identity,
            previous_payload=previous_payload,
        )

        logger.info(
            "descriptor.built",
            kind=request.kind.value,
            habit=subject_name,
            sessions_from=previous.progress_count if previous else None,
            sessions_to=next_state.progress_count,
            badges=list(next_state.badges),
            funding_utxo=str(funding.outpoint),
        )
        return request

    def to_spell(self, request: TransitionRequest) -> dict[str, Any]:
        """Serialise a request into the prover's spell JSON."""
        ins: list[dict[str, Any]] = []
        if request.previous is not None:
            if request.previous_outpoint is None:
                raise MissingOutputError(
                    ValidationErrorCode.MISSING_OUTPUT.value,
                    "Update requires the token output being spent",
                )
            ins.append(
                {
                    "utxo_id": str(request.previous_outpoint),
                    "charms": {SPELL_APP_KEY: self._previous_charm(request)},
                }
            )

        return {
            "version": SPELL_VERSION,
            "apps": {SPELL_APP_KEY: request.app_identity},
            "ins": ins,
            "outs": [
                {
                    "address": request.next.owner,
                    "charms": {SPELL_APP_KEY: encode_state(request.next, self.schedule)},
                    "sats": TOKEN_CARRY_SATS,
                }
            ],
        }

    def _previous_charm(self, request: TransitionRequest) -> dict[str, Any]:
        # The spent charm must equal the one on the ledger; legacy payloads
        # do not survive a decode/encode round trip
        if request.previous_payload is not None:
            return dict(request.previous_payload)
        return encode_state(request.previous, self.schedule)  # type: ignore[arg-type]

    def to_prover_request(
        self,
        request: TransitionRequest,
        binary_b64: str,
        prev_tx_hexes: Sequence[str],
    ) -> dict[str, Any]:
        """Request body for the HTTP prover (``POST /spells/prove``)."""
        return {
            "version": SPELL_VERSION,
            "spell": self.to_spell(request),
            "binaries": {self.vk: binary_b64},
            "prev_txs": [{"bitcoin": tx_hex} for tx_hex in prev_tx_hexes],
            "funding_utxo": str(request.funding.outpoint),
            "funding_utxo_value": request.funding.value,
            "change_address": request.funding.address,
            "fee_rate": request.fee_rate,
            "chain": "bitcoin",
        }
