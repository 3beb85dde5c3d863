"""
Preference state machine and the daily batch reset.

States:
    AWAITING   awaiting_optin=True,  has_opted_in=False
    OPTED_IN   awaiting_optin=False, has_opted_in=True
    OPTED_OUT  awaiting_optin=False, has_opted_in=False

intro_sent_today is an overlay on any state. Every transition is one
statement against the store (an upsert or a key-filtered update), so two
racing transitions on the same contact serialize on the row and the last
commit wins whole.
"""

import logging
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from consent_api.contacts import contact_exists
from consent_api.errors import ErrorKind, Result
from consent_api.metrics import record_reset, record_transition
from consent_api.models import Preference
from consent_api.storage import upsert_statement, utcnow
from consent_api.utils import generate_id

logger = logging.getLogger(__name__)

preferences = Preference.__table__

UPSERT = "upsert"
STRICT = "strict"

AWAITING = "AWAITING"
OPTED_IN = "OPTED_IN"
OPTED_OUT = "OPTED_OUT"


def state_of(preference: Preference) -> str:
    """Name the opt state a preference row is in."""
    if preference.has_opted_in:
        return OPTED_IN
    if preference.awaiting_optin:
        return AWAITING
    return OPTED_OUT


def _changes(transition: str, now) -> dict:
    if transition == "opt_in":
        return {"has_opted_in": True, "awaiting_optin": False, "opted_in_at": now, "updated_at": now}
    if transition == "opt_out":
        return {"has_opted_in": False, "awaiting_optin": False, "opted_out_at": now, "updated_at": now}
    if transition == "intro_sent":
        return {"intro_sent_today": True, "updated_at": now}
    raise ValueError(f"Unknown transition: {transition}")


def _apply(
    db: Session,
    contact_id: str,
    transition: str,
    policy: str,
    id_length: int,
) -> Result[None]:
    """
    Run one transition for a contact under the deployment's mutation policy.

    The contact must exist (invalid_reference otherwise). Under the upsert
    policy a missing preference row is created in the same statement, starting
    from AWAITING with the transition applied. Under the strict policy a
    missing row yields not_found and nothing is written.
    """
    if policy not in (UPSERT, STRICT):
        raise ValueError(f"Unknown preference policy: {policy}")

    try:
        if not contact_exists(db, contact_id):
            logger.info(f"{transition} rejected, unknown contact: {contact_id}")
            record_transition(transition, ErrorKind.INVALID_REFERENCE.value)
            return Result.failure(ErrorKind.INVALID_REFERENCE, "Invalid contact_id")

        changes = _changes(transition, utcnow())

        if policy == UPSERT:
            values = {
                "id": generate_id(id_length),
                "contact_id": contact_id,
                "has_opted_in": False,
                "awaiting_optin": True,
                "intro_sent_today": False,
                **changes,
            }
            db.execute(upsert_statement(db, preferences, values, "contact_id", changes.keys()))
            db.commit()
        else:
            result = db.execute(
                update(preferences)
                .where(preferences.c.contact_id == contact_id)
                .values(**changes)
            )
            if result.rowcount == 0:
                db.rollback()
                logger.info(f"{transition} found no preference row for {contact_id}")
                record_transition(transition, ErrorKind.NOT_FOUND.value)
                return Result.failure(ErrorKind.NOT_FOUND, "Preferences not found")
            db.commit()

    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"Failed to apply {transition} for {contact_id}")
        record_transition(transition, ErrorKind.STORE_UNAVAILABLE.value)
        return Result.failure(ErrorKind.STORE_UNAVAILABLE, "Failed to update preference")

    logger.info(f"{transition} applied for {contact_id}")
    record_transition(transition, "ok")
    return Result.success()


def opt_in(db: Session, contact_id: str, policy: str = UPSERT, id_length: int = 12) -> Result[None]:
    """Move a contact to OPTED_IN and stamp opted_in_at."""
    return _apply(db, contact_id, "opt_in", policy, id_length)


def opt_out(db: Session, contact_id: str, policy: str = UPSERT, id_length: int = 12) -> Result[None]:
    """Move a contact to OPTED_OUT and stamp opted_out_at."""
    return _apply(db, contact_id, "opt_out", policy, id_length)


def mark_intro_sent(db: Session, contact_id: str, policy: str = UPSERT, id_length: int = 12) -> Result[None]:
    """Set intro_sent_today, leaving the opt state alone."""
    return _apply(db, contact_id, "intro_sent", policy, id_length)


def get(db: Session, contact_id: str) -> Result[Optional[Preference]]:
    """Fetch the preference row of a contact, not_found when absent."""
    try:
        preference = db.execute(
            select(Preference).where(Preference.contact_id == contact_id)
        ).scalar_one_or_none()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"Failed to fetch preferences for {contact_id}")
        return Result.failure(ErrorKind.STORE_UNAVAILABLE, "Failed to fetch preferences")

    if preference is None:
        return Result.failure(ErrorKind.NOT_FOUND, "Preferences not found")
    return Result.success(preference)


# =============================================================================
# Batch Reset
# =============================================================================

def reset_daily_flags(db: Session, scope: str = "flagged", reset_opt_state: bool = False) -> Result[int]:
    """
    Clear intro_sent_today in one bulk UPDATE.

    Args:
        db: Database session
        scope: "flagged" touches rows with intro_sent_today set; "all" touches
            every row whose state differs from the reset target
        reset_opt_state: Also put the touched rows back into AWAITING

    Returns:
        Result with the number of rows changed. Rows already at the target are
        filtered out, so the count is exact on every backend.
    """
    if scope not in ("flagged", "all"):
        raise ValueError(f"Unknown reset scope: {scope}")

    values = {"intro_sent_today": False, "updated_at": utcnow()}
    condition = preferences.c.intro_sent_today.is_(True)
    if reset_opt_state:
        values.update(has_opted_in=False, awaiting_optin=True)
        if scope == "all":
            condition = or_(
                condition,
                preferences.c.has_opted_in.is_(True),
                preferences.c.awaiting_optin.is_(False),
            )

    try:
        result = db.execute(update(preferences).where(condition).values(**values))
        affected = result.rowcount
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Daily reset failed")
        return Result.failure(ErrorKind.STORE_UNAVAILABLE, "Failed to reset daily flags")

    logger.info(f"Daily reset changed {affected} preference rows")
    record_reset(affected)
    return Result.success(affected)
