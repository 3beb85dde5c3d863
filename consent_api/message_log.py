"""
Append-only log of inbound messages and the replies sent for them.
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from consent_api.contacts import contact_exists
from consent_api.errors import ErrorKind, Result
from consent_api.models import MessageLog
from consent_api.storage import utcnow
from consent_api.utils import generate_id

logger = logging.getLogger(__name__)


def append(
    db: Session,
    contact_id: str,
    message_in: str,
    message_out: Optional[str] = None,
    id_length: int = 12,
) -> Result[str]:
    """
    Record a message pair against an existing contact.

    The contact is checked explicitly before the insert since not every
    backend enforces the foreign key.

    Returns:
        Result with the new entry id, or invalid_reference when the contact
        does not exist (nothing is written).
    """
    try:
        if not contact_exists(db, contact_id):
            logger.info(f"Message rejected, unknown contact: {contact_id}")
            return Result.failure(ErrorKind.INVALID_REFERENCE, "Invalid contact_id")

        entry_id = generate_id(id_length)
        db.add(MessageLog(
            id=entry_id,
            contact_id=contact_id,
            timestamp=utcnow(),
            message_in=message_in,
            message_out=message_out or None,
        ))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"Failed to log message for {contact_id}")
        return Result.failure(ErrorKind.STORE_UNAVAILABLE, "Failed to log message")

    logger.info(f"Message logged: {entry_id} for {contact_id}")
    return Result.success(entry_id)
