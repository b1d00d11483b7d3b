"""
SQLAlchemy models for Mems.

This module defines all database entities:
- Mem: A shared session that participants upload media into
- MemParticipant: Membership of a user in a mem
- MemNote: Free-text notes left by participants
- MemMedia: Committed media files stored in blob storage
- MemMediaReaction: Emoji reactions on media
- MemMediaComment: Comments on media
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any

from sqlalchemy import (
    Column, String, Integer, BigInteger, Text, Boolean, DateTime,
    ForeignKey, JSON, Enum as SQLEnum, Index, UniqueConstraint, Uuid
)
from sqlalchemy.orm import relationship

from .db import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored in DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class ParticipantRole(str, Enum):
    """Role of a participant within a mem."""
    CREATOR = "creator"
    PARTICIPANT = "participant"


class MediaFormat(str, Enum):
    """Stored media formats."""
    IMAGE = "image"
    VIDEO = "video"


class Mem(Base):
    """A shared photo/video session."""

    __tablename__ = "mems"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    place = Column(String(500), nullable=True)
    is_public = Column(Boolean, default=False, nullable=False)

    # Users come from the managed auth provider; ids are opaque strings
    creator_id = Column(String(255), nullable=False, index=True)
    join_code = Column(String(6), nullable=False, unique=True, index=True)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    ended_at = Column(DateTime, nullable=True)

    participants = relationship("MemParticipant", back_populates="mem", cascade="all, delete-orphan")
    notes = relationship("MemNote", back_populates="mem", cascade="all, delete-orphan")
    media = relationship("MemMedia", back_populates="mem", cascade="all, delete-orphan")

    @property
    def is_ended(self) -> bool:
        return self.ended_at is not None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": str(self.id),
            "name": self.name,
            "description": self.description,
            "place": self.place,
            "is_public": self.is_public,
            "creator_id": self.creator_id,
            "join_code": self.join_code,
            "created_at": _iso(self.created_at),
            "ended_at": _iso(self.ended_at),
        }

    def to_preview(self) -> Dict[str, Any]:
        """Public view shown to someone holding the join code."""
        return {
            "id": str(self.id),
            "name": self.name,
            "description": self.description,
            "place": self.place,
        }


class MemParticipant(Base):
    """Membership of a user in a mem."""

    __tablename__ = "mem_participants"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    mem_id = Column(Uuid(as_uuid=True), ForeignKey("mems.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(255), nullable=False, index=True)
    role = Column(SQLEnum(ParticipantRole), default=ParticipantRole.PARTICIPANT, nullable=False)
    joined_at = Column(DateTime, default=utcnow, nullable=False)

    mem = relationship("Mem", back_populates="participants")

    __table_args__ = (
        UniqueConstraint("mem_id", "user_id", name="uq_mem_participant"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": str(self.id),
            "mem_id": str(self.mem_id),
            "user_id": self.user_id,
            "role": self.role.value if self.role else None,
            "joined_at": _iso(self.joined_at),
        }


class MemNote(Base):
    """Text note left in a mem."""

    __tablename__ = "mem_notes"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    mem_id = Column(Uuid(as_uuid=True), ForeignKey("mems.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    mem = relationship("Mem", back_populates="notes")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": str(self.id),
            "mem_id": str(self.mem_id),
            "user_id": self.user_id,
            "content": self.content,
            "created_at": _iso(self.created_at),
        }


class MemMedia(Base):
    """Media file committed to a mem."""

    __tablename__ = "mem_media"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    mem_id = Column(Uuid(as_uuid=True), ForeignKey("mems.id", ondelete="CASCADE"), nullable=False, index=True)
    uploader_id = Column(String(255), nullable=False, index=True)

    # Blob storage object key
    storage_key = Column(String(1000), nullable=False, unique=True)
    file_name = Column(String(500), nullable=False)
    content_type = Column(String(100), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    format = Column(SQLEnum(MediaFormat), nullable=False)

    # Denormalized engagement, recomputed on every reaction toggle
    reaction_counts = Column(JSON, nullable=False, default=dict)
    # Format: {"heart": 2, "fire": 1}
    score = Column(Integer, nullable=False, default=0, index=True)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    mem = relationship("Mem", back_populates="media")
    reactions = relationship("MemMediaReaction", back_populates="media", cascade="all, delete-orphan")
    comments = relationship("MemMediaComment", back_populates="media", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_mem_media_mem_created", "mem_id", "created_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": str(self.id),
            "mem_id": str(self.mem_id),
            "uploader_id": self.uploader_id,
            "storage_key": self.storage_key,
            "file_name": self.file_name,
            "content_type": self.content_type,
            "file_size": self.file_size,
            "format": self.format.value if self.format else None,
            "reaction_counts": dict(self.reaction_counts or {}),
            "score": self.score,
            "created_at": _iso(self.created_at),
        }


class MemMediaReaction(Base):
    """Emoji reaction by a user on a media item."""

    __tablename__ = "mem_media_reactions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    media_id = Column(Uuid(as_uuid=True), ForeignKey("mem_media.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(255), nullable=False)
    emoji = Column(String(32), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    media = relationship("MemMedia", back_populates="reactions")

    __table_args__ = (
        UniqueConstraint("media_id", "user_id", "emoji", name="uq_media_reaction"),
    )


class MemMediaComment(Base):
    """Comment by a user on a media item."""

    __tablename__ = "mem_media_comments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    media_id = Column(Uuid(as_uuid=True), ForeignKey("mem_media.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    media = relationship("MemMedia", back_populates="comments")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": str(self.id),
            "media_id": str(self.media_id),
            "user_id": self.user_id,
            "content": self.content,
            "created_at": _iso(self.created_at),
        }
