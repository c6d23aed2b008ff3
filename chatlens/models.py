"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
Timestamps are ISO-8601 UTC strings (see utils.format_ts).
"""

from sqlalchemy import Column, Integer, String, Text
from sqlalchemy.orm import declarative_base

# Base class for SQLAlchemy models
Base = declarative_base()


class MessageRow(Base):
    """
    Processed message.

    Table: processed_messages
    Unique: external_id (idempotency key, upsert-on-conflict)
    """
    __tablename__ = "processed_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_id = Column(String(255), nullable=False, unique=True, index=True)
    group_id = Column(String(255), nullable=False, index=True)
    sender = Column(String(255), nullable=False)
    text = Column(Text, nullable=False)
    summary = Column(Text, nullable=False)
    category = Column(String(32), nullable=False, index=True)
    received_at = Column(String(32), nullable=False, index=True)
    processed_at = Column(String(32), nullable=False)
    created_at = Column(String(32), nullable=False)
    updated_at = Column(String(32), nullable=False)


class GroupRow(Base):
    """
    Conversation/thread. Created lazily on the first message.

    Table: groups
    """
    __tablename__ = "groups"

    id = Column(String(255), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    created_at = Column(String(32), nullable=False)
