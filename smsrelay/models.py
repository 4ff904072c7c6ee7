"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For the domain entity and its transitions, see entities.py.
"""

from sqlalchemy import Column, DateTime, Integer, Interval, String, Text

from smsrelay.storage import Base


class MessageRow(Base):
    """
    SQLAlchemy model for storing relayed SMS messages.

    Table: messages
    Primary Key: id (UUID string generated before the message is stored)
    """
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    owner = Column(String, nullable=False, index=True)
    contact = Column(String, nullable=False, index=True)
    content = Column(Text, nullable=False)
    type = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)

    request_received_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    order_timestamp = Column(DateTime(timezone=True), nullable=False, index=True)

    send_attempt_count = Column(Integer, nullable=False, default=0)
    send_duration = Column(Interval, nullable=True)
    last_attempted_at = Column(DateTime(timezone=True), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
