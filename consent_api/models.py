"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text

from consent_api.storage import Base


class Contact(Base):
    """
    A messaging identity keyed by phone number.

    Table: contacts
    Unique: phone_number (one contact per number, arbiter of creation races)
    """
    __tablename__ = "contacts"

    id = Column(String(32), primary_key=True)
    phone_number = Column(String(20), nullable=False, unique=True, index=True)
    created_at = Column(DateTime, nullable=False)


class Preference(Base):
    """
    Consent state attached to a contact.

    Table: user_preferences
    Unique: contact_id (at most one preference row per contact)
    """
    __tablename__ = "user_preferences"

    id = Column(String(32), primary_key=True)
    contact_id = Column(String(32), ForeignKey("contacts.id"), nullable=False, unique=True)
    has_opted_in = Column(Boolean, nullable=False, default=False)
    awaiting_optin = Column(Boolean, nullable=False, default=True)
    intro_sent_today = Column(Boolean, nullable=False, default=False)
    opted_in_at = Column(DateTime, nullable=True)
    opted_out_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False)


class MessageLog(Base):
    """
    An inbound message and the optional reply sent for it.

    Table: message_logs
    Append-only; rows are never updated or deleted.
    """
    __tablename__ = "message_logs"

    id = Column(String(32), primary_key=True)
    contact_id = Column(String(32), ForeignKey("contacts.id"), nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False)
    message_in = Column(Text, nullable=False)
    message_out = Column(Text, nullable=True)
