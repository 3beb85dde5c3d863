"""
Contact registry: one contact per phone number.

register() is idempotent on phone_number. The unique constraint on
contacts.phone_number decides creation races; the losing insert is rolled
back and answered with the row that won.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from consent_api.errors import ErrorKind, Result
from consent_api.metrics import record_registration
from consent_api.models import Contact, Preference
from consent_api.storage import utcnow
from consent_api.utils import generate_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Registration:
    contact_id: str
    existed: bool


def find_contact_id(db: Session, phone_number: str) -> Optional[str]:
    """Point lookup of a contact id by phone number."""
    return db.execute(
        select(Contact.id).where(Contact.phone_number == phone_number)
    ).scalar_one_or_none()


def contact_exists(db: Session, contact_id: str) -> bool:
    """Check that a contact id resolves to a stored contact."""
    return db.execute(
        select(Contact.id).where(Contact.id == contact_id)
    ).first() is not None


def register(
    db: Session,
    phone_number: str,
    eager_preference: bool = True,
    id_length: int = 12,
) -> Result[Registration]:
    """
    Resolve a phone number to a contact, creating it if absent.

    Args:
        db: Database session
        phone_number: Validated phone number
        eager_preference: Also insert an AWAITING preference row for a new contact
        id_length: Length of issued identifiers

    Returns:
        Result with Registration(contact_id, existed); store failures come
        back as store_unavailable.
    """
    try:
        existing_id = find_contact_id(db, phone_number)
        if existing_id is not None:
            logger.info(f"Contact already registered: {existing_id}")
            record_registration("existed")
            return Result.success(Registration(existing_id, existed=True))

        now = utcnow()
        contact_id = generate_id(id_length)
        db.add(Contact(id=contact_id, phone_number=phone_number, created_at=now))
        if eager_preference:
            # flush the contact first so the preference row's reference resolves
            db.flush()
            db.add(Preference(
                id=generate_id(id_length),
                contact_id=contact_id,
                has_opted_in=False,
                awaiting_optin=True,
                intro_sent_today=False,
                updated_at=now,
            ))
        db.commit()

    except IntegrityError:
        db.rollback()
        return _reconcile(db, phone_number)

    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to register contact")
        return Result.failure(ErrorKind.STORE_UNAVAILABLE, "Failed to create contact")

    logger.info(f"Contact created: {contact_id}")
    record_registration("created")
    return Result.success(Registration(contact_id, existed=False))


def _reconcile(db: Session, phone_number: str) -> Result[Registration]:
    """Answer a lost creation race with the contact that won it."""
    try:
        winner_id = find_contact_id(db, phone_number)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to re-read contact after conflict")
        return Result.failure(ErrorKind.STORE_UNAVAILABLE, "Failed to create contact")

    if winner_id is None:
        # the conflict was not on phone_number (e.g. an id collision)
        logger.error("Integrity error on contact insert with no matching phone number")
        return Result.failure(ErrorKind.STORE_UNAVAILABLE, "Failed to create contact")

    logger.info(
        f"Duplicate registration reconciled: {winner_id}",
        extra={"reason": ErrorKind.CONFLICT_RECONCILED.value},
    )
    record_registration("reconciled")
    return Result.success(Registration(winner_id, existed=True))


def lookup(db: Session, phone_number: str) -> Result[Optional[Contact]]:
    """
    Fetch a contact by phone number.

    Returns:
        Result with the Contact, or not_found when no contact has this number.
    """
    try:
        contact = db.execute(
            select(Contact).where(Contact.phone_number == phone_number)
        ).scalar_one_or_none()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to fetch contact")
        return Result.failure(ErrorKind.STORE_UNAVAILABLE, "Failed to fetch contact")

    if contact is None:
        return Result.failure(ErrorKind.NOT_FOUND, "Contact not found")
    return Result.success(contact)
