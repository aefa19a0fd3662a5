"""Token state codec - maps on-ledger charm payloads to and from TokenState.

On the ledger the token payload uses the contract's field names
(``habit_name``, ``total_sessions``, ``last_updated``); internally the
project uses TokenState. This module is the only place that knows both.
"""

from typing import Any, Optional

import structlog
from pydantic import ValidationError

from habit_tracker.models.token import TokenState
from habit_tracker.services.exceptions import MalformedResponseError
from habit_tracker.services.tracker.badges import DEFAULT_SCHEDULE, BadgeSchedule

logger = structlog.get_logger()

# App slot used in spells we build, and the expanded form the extractor reports
SPELL_APP_KEY = "$00"
EXTRACTED_APP_KEYS = ("$0000", "$00")


def encode_state(state: TokenState, schedule: BadgeSchedule = DEFAULT_SCHEDULE) -> dict[str, Any]:
    """Render a TokenState as the charm payload committed on-chain."""
    payload: dict[str, Any] = {
        "name": state.name,
        "description": state.description,
        "owner": state.owner,
        "habit_name": state.subject_name,
        "total_sessions": state.progress_count,
        "badges": list(state.badges),
        "badge_schedule": schedule.version,
    }
    if state.created_at is not None:
        payload["created_at"] = state.created_at
    if state.last_updated_at is not None:
        payload["last_updated"] = state.last_updated_at
    return payload


def decode_state(payload: dict[str, Any]) -> TokenState:
    """Parse a charm payload into a TokenState.

    Raises:
        MalformedResponseError: If required fields are missing or mistyped
    """
    if not isinstance(payload, dict):
        raise MalformedResponseError(
            f"Charm payload must be an object, got {type(payload).__name__}"
        )

    sessions = payload.get("total_sessions", 0)
    if isinstance(sessions, bool) or not isinstance(sessions, int):
        raise MalformedResponseError(f"total_sessions must be an integer, got {sessions!r}")

    try:
        return TokenState(
            name=payload.get("name", ""),
            description=payload.get("description", ""),
            owner=payload["owner"],
            subject_name=payload["habit_name"],
            progress_count=sessions,
            created_at=payload.get("created_at"),
            last_updated_at=payload.get("last_updated"),
            badges=tuple(payload.get("badges") or ()),
        )
    except KeyError as e:
        raise MalformedResponseError(f"Charm payload missing field {e.args[0]!r}") from e
    except ValidationError as e:
        raise MalformedResponseError(f"Invalid charm payload: {e.errors()[0]['msg']}") from e


def extract_token(
    spell: dict[str, Any]
) -> tuple[TokenState, Optional[str], dict[str, Any]]:
    """Extract the token state, app identity and raw charm from a decoded spell.

    Args:
        spell: Output of ``charms tx show-spell --json``

    Returns:
        Tuple of (state, app_identity, payload); app_identity is None when
        absent, payload is the charm exactly as committed

    Raises:
        MalformedResponseError: If the spell carries no token charm
    """
    outs = spell.get("outs") if isinstance(spell, dict) else None
    if not isinstance(outs, list) or not outs:
        raise MalformedResponseError("No outputs found in spell")

    charms = outs[0].get("charms") if isinstance(outs[0], dict) else None
    if not isinstance(charms, dict):
        raise MalformedResponseError("No charms found in spell")

    payload = next((charms[k] for k in EXTRACTED_APP_KEYS if k in charms), None)
    if payload is None:
        raise MalformedResponseError("No charms found in spell")

    apps = spell.get("apps") or {}
    app_identity = next((apps[k] for k in EXTRACTED_APP_KEYS if k in apps), None)

    state = decode_state(payload)
    logger.debug(
        "codec.token_extracted",
        habit=state.subject_name,
        sessions=state.progress_count,
        app_identity=app_identity,
    )
    return state, app_identity, payload
