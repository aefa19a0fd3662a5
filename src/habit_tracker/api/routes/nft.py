"""Habit token API endpoints for external-signer wallets.

This module implements REST endpoints for the browser-wallet flow:
- POST /api/nft/create/unsigned - Build unsigned commit/spell pair creating a token
- POST /api/nft/update/unsigned - Build unsigned pair recording one more session
- POST /api/nft/broadcast - Broadcast a pair signed by the caller's wallet
- POST /api/nft/view - Read a token's current state

Every response uses the envelope ``{success, message, data}``. Service errors
are mapped to status codes by ``service_error_handler``:
- ValidationError / FundingError / FormatError → 400
- TransitionInProgressError → 409
- ExternalFailure (prover, node, wallet, broadcast) → 502
"""

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from habit_tracker.api.dependencies import get_service
from habit_tracker.models.token import Outpoint
from habit_tracker.services.exceptions import (
    ExternalFailure,
    FormatError,
    FundingError,
    ServiceError,
    TransitionInProgressError,
    ValidationError,
)
from habit_tracker.services.tracker.service import HabitTokenService, UnsignedTransition

logger = structlog.get_logger()
router = APIRouter(prefix="/api/nft", tags=["nft"])


# Request/Response Models


class CreateUnsignedRequest(BaseModel):
    """Request model for building an unsigned genesis pair."""

    habit: str = Field(..., description="Habit to track", min_length=1, max_length=200)
    address: str = Field(..., description="Owner address; also receives change", min_length=1)
    funding_utxo: str = Field(..., description="Funding output as txid:vout")
    funding_value: int = Field(..., description="Funding output value in sats", ge=0)


class UpdateUnsignedRequest(BaseModel):
    """Request model for building an unsigned update pair."""

    nft_utxo: str = Field(..., description="Current token output as txid:vout")
    user_address: str = Field(..., description="Address receiving change", min_length=1)
    funding_utxo: str = Field(..., description="Funding output as txid:vout")
    funding_value: int = Field(..., description="Funding output value in sats", ge=0)


class BroadcastRequest(BaseModel):
    """Request model for broadcasting a signed pair."""

    signed_commit_hex: str = Field(..., description="Signed commit transaction hex", min_length=2)
    signed_spell_hex: str = Field(..., description="Signed spell transaction hex", min_length=2)


class ViewRequest(BaseModel):
    utxo: str = Field(..., description="Token output as txid:vout")


class SpellInputInfo(BaseModel):
    """One input the caller's wallet must sign."""

    tx_index: int = Field(..., description="0 = commit transaction, 1 = spell transaction")
    input_index: int = Field(..., description="Input position within that transaction")
    prev_script_hex: str = Field(
        ...,
        description="scriptPubKey of the spent output (empty when the signer's wallet owns it)",
    )
    amount_sats: int = Field(..., description="Value of the spent output in sats")


class UnsignedTransactionsDTO(BaseModel):
    """Unsigned commit/spell pair with signing instructions."""

    commit_tx_hex: str
    spell_tx_hex: str
    commit_txid: str
    spell_inputs_info: list[SpellInputInfo]
    current_sessions: Optional[int] = None
    new_sessions: Optional[int] = None


class BroadcastDTO(BaseModel):
    commit_txid: str
    spell_txid: str
    token_utxo: str


class TokenDTO(BaseModel):
    """Data Transfer Object for a token's current state."""

    utxo: str
    habit_name: str
    sessions: int
    owner: str
    badges: list[str]
    next_badge: Optional[str] = Field(
        default=None, description="Next milestone label (null once all are earned)"
    )
    sessions_to_next_badge: Optional[int] = None
    created_at: Optional[int] = None
    last_updated: Optional[int] = None
    app_id: Optional[str] = None


class ApiResponse(BaseModel):
    """Response envelope shared by every endpoint."""

    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None


def _unsigned_dto(unsigned: UnsignedTransition) -> UnsignedTransactionsDTO:
    plan = unsigned.plan
    return UnsignedTransactionsDTO(
        commit_tx_hex=plan.commit_tx_hex,
        spell_tx_hex=plan.spell_tx_hex,
        commit_txid=plan.commit_txid,
        spell_inputs_info=[
            SpellInputInfo(
                tx_index=d.tx_index,
                input_index=d.input_index,
                prev_script_hex=d.prevout.script_pubkey_hex,
                amount_sats=d.prevout.amount_sats,
            )
            for d in plan.descriptors
        ],
        current_sessions=unsigned.previous_count,
        new_sessions=unsigned.next_count if unsigned.previous_count is not None else None,
    )


# API Endpoints


@router.post("/create/unsigned", response_model=ApiResponse, response_model_exclude_none=True)
async def create_unsigned(
    request: CreateUnsignedRequest,
    service: HabitTokenService = Depends(get_service),
) -> ApiResponse:
    """Build unsigned transactions creating a new habit token.

    Example:
        POST /api/nft/create/unsigned
        {
            "habit": "Morning Meditation",
            "address": "tb1q...",
            "funding_utxo": "ab12...:0",
            "funding_value": 50000
        }
    """
    funding_outpoint = Outpoint.parse(request.funding_utxo)
    unsigned = await service.build_unsigned_create(
        habit_name=request.habit,
        address=request.address,
        funding_outpoint=funding_outpoint,
        funding_value=request.funding_value,
    )
    logger.info("api.create_unsigned", habit=request.habit, commit_txid=unsigned.plan.commit_txid)
    return ApiResponse(
        success=True,
        message="Unsigned transactions created",
        data=_unsigned_dto(unsigned),
    )


@router.post("/update/unsigned", response_model=ApiResponse, response_model_exclude_none=True)
async def update_unsigned(
    request: UpdateUnsignedRequest,
    service: HabitTokenService = Depends(get_service),
) -> ApiResponse:
    """Build unsigned transactions recording one more session on a token."""
    token = Outpoint.parse(request.nft_utxo)
    funding_outpoint = Outpoint.parse(request.funding_utxo)
    unsigned = await service.build_unsigned_update(
        token=token,
        user_address=request.user_address,
        funding_outpoint=funding_outpoint,
        funding_value=request.funding_value,
    )
    logger.info(
        "api.update_unsigned",
        token=str(token),
        current_sessions=unsigned.previous_count,
        new_sessions=unsigned.next_count,
    )
    return ApiResponse(
        success=True,
        message="Unsigned update transactions created",
        data=_unsigned_dto(unsigned),
    )


@router.post("/broadcast", response_model=ApiResponse, response_model_exclude_none=True)
async def broadcast(
    request: BroadcastRequest,
    service: HabitTokenService = Depends(get_service),
) -> ApiResponse:
    """Broadcast a commit/spell pair signed by the caller's wallet."""
    result = await service.broadcast_signed(request.signed_commit_hex, request.signed_spell_hex)
    return ApiResponse(
        success=True,
        message="NFT broadcasted successfully",
        data=BroadcastDTO(
            commit_txid=result.commit_txid,
            spell_txid=result.spell_txid,
            token_utxo=str(result.token_outpoint),
        ),
    )


@router.post("/view", response_model=ApiResponse, response_model_exclude_none=True)
async def view(
    request: ViewRequest,
    service: HabitTokenService = Depends(get_service),
) -> ApiResponse:
    """Read the current state of a habit token."""
    token = Outpoint.parse(request.utxo)
    current = await service.view_token(token)
    state = current.state

    upcoming = service.builder.schedule.next_badge(state.progress_count)
    return ApiResponse(
        success=True,
        message="NFT data retrieved",
        data=TokenDTO(
            utxo=str(token),
            habit_name=state.subject_name,
            sessions=state.progress_count,
            owner=state.owner,
            badges=list(state.badges),
            next_badge=upcoming[1] if upcoming else None,
            sessions_to_next_badge=upcoming[0] - state.progress_count if upcoming else None,
            created_at=state.created_at,
            last_updated=state.last_updated_at,
            app_id=current.app_identity,
        ),
    )


# Error mapping


def service_error_status(exc: ServiceError) -> int:
    """HTTP status for a service error."""
    if isinstance(exc, TransitionInProgressError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (ValidationError, FundingError, FormatError)):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, ExternalFailure):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Render a service error inside the response envelope."""
    status_code = service_error_status(exc)
    log = logger.warning if status_code < 500 else logger.error
    log(
        "api.request_failed",
        path=request.url.path,
        status=status_code,
        error=str(exc),
        error_type=type(exc).__name__,
    )
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": str(exc)},
    )
