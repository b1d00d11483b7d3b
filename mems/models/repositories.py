"""
Repository classes for Mems.

This module provides:
- CRUD operations for all entities
- Membership, media and engagement queries
"""

import uuid
from typing import Optional, List, Type, TypeVar, Generic

from sqlalchemy import func
from sqlalchemy.orm import Session

from .db import Base
from .entities import (
    Mem, MemParticipant, MemNote, MemMedia, MemMediaReaction, MemMediaComment,
    ParticipantRole, utcnow,
)


T = TypeVar("T", bound=Base)


class BaseRepository(Generic[T]):
    """Base repository with common CRUD operations."""

    model_class: Type[T]

    def __init__(self, session: Session):
        self.session = session

    def create(self, **kwargs) -> T:
        """Create a new entity."""
        entity = self.model_class(**kwargs)
        self.session.add(entity)
        self.session.flush()
        return entity

    def get_by_id(self, entity_id: uuid.UUID) -> Optional[T]:
        """Get entity by ID."""
        return self.session.query(self.model_class).filter(
            self.model_class.id == entity_id
        ).first()

    def delete(self, entity_id: uuid.UUID) -> bool:
        """Delete entity by ID."""
        entity = self.get_by_id(entity_id)
        if entity:
            self.session.delete(entity)
            self.session.flush()
            return True
        return False

    def count(self) -> int:
        """Count total entities."""
        return self.session.query(func.count(self.model_class.id)).scalar()


class MemRepository(BaseRepository[Mem]):
    """Repository for Mem entities."""

    model_class = Mem

    def get_by_join_code(self, join_code: str) -> Optional[Mem]:
        """Get mem by its join code (codes are stored upper-case)."""
        return self.session.query(Mem).filter(
            Mem.join_code == join_code.strip().upper()
        ).first()

    def join_code_exists(self, join_code: str) -> bool:
        """Check whether a join code is already taken."""
        return self.session.query(Mem.id).filter(Mem.join_code == join_code).first() is not None

    def mark_ended(self, mem: Mem) -> Mem:
        """Close a mem for further uploads."""
        mem.ended_at = utcnow()
        self.session.flush()
        return mem


class ParticipantRepository(BaseRepository[MemParticipant]):
    """Repository for MemParticipant entities."""

    model_class = MemParticipant

    def get(self, mem_id: uuid.UUID, user_id: str) -> Optional[MemParticipant]:
        """Get the membership row of a user in a mem."""
        return self.session.query(MemParticipant).filter(
            MemParticipant.mem_id == mem_id,
            MemParticipant.user_id == user_id,
        ).first()

    def add(self, mem_id: uuid.UUID, user_id: str,
            role: ParticipantRole = ParticipantRole.PARTICIPANT) -> MemParticipant:
        """Insert a participant row."""
        return self.create(mem_id=mem_id, user_id=user_id, role=role)

    def list_for_mem(self, mem_id: uuid.UUID) -> List[MemParticipant]:
        """Participants of a mem ordered by join time."""
        return self.session.query(MemParticipant).filter(
            MemParticipant.mem_id == mem_id
        ).order_by(MemParticipant.joined_at.asc()).all()

    def count_for_mem(self, mem_id: uuid.UUID) -> int:
        """Number of participants in a mem."""
        return self.session.query(func.count(MemParticipant.id)).filter(
            MemParticipant.mem_id == mem_id
        ).scalar()

    def list_for_user(self, user_id: str) -> List[MemParticipant]:
        """All memberships of a user."""
        return self.session.query(MemParticipant).filter(
            MemParticipant.user_id == user_id
        ).all()


class NoteRepository(BaseRepository[MemNote]):
    """Repository for MemNote entities."""

    model_class = MemNote

    def list_for_mem(self, mem_id: uuid.UUID) -> List[MemNote]:
        """Notes of a mem, newest first."""
        return self.session.query(MemNote).filter(
            MemNote.mem_id == mem_id
        ).order_by(MemNote.created_at.desc()).all()


class MediaRepository(BaseRepository[MemMedia]):
    """Repository for MemMedia entities."""

    model_class = MemMedia

    def list_for_mem(self, mem_id: uuid.UUID, sort: str = "recent", limit: Optional[int] = None) -> List[MemMedia]:
        """Media of a mem, newest first or by engagement score."""
        query = self.session.query(MemMedia).filter(MemMedia.mem_id == mem_id)
        if sort == "score":
            query = query.order_by(MemMedia.score.desc(), MemMedia.created_at.desc())
        else:
            query = query.order_by(MemMedia.created_at.desc())
        if limit:
            query = query.limit(limit)
        return query.all()

    def count_for_mem(self, mem_id: uuid.UUID) -> int:
        """Number of media items in a mem."""
        return self.session.query(func.count(MemMedia.id)).filter(
            MemMedia.mem_id == mem_id
        ).scalar()

    def get_by_storage_key(self, storage_key: str) -> Optional[MemMedia]:
        """Get media by blob storage key."""
        return self.session.query(MemMedia).filter(MemMedia.storage_key == storage_key).first()


class ReactionRepository(BaseRepository[MemMediaReaction]):
    """Repository for MemMediaReaction entities."""

    model_class = MemMediaReaction

    def get(self, media_id: uuid.UUID, user_id: str, emoji: str) -> Optional[MemMediaReaction]:
        """Get a user's reaction with a given emoji key."""
        return self.session.query(MemMediaReaction).filter(
            MemMediaReaction.media_id == media_id,
            MemMediaReaction.user_id == user_id,
            MemMediaReaction.emoji == emoji,
        ).first()

    def counts_for_media(self, media_id: uuid.UUID) -> dict[str, int]:
        """Reaction counts per emoji key."""
        rows = self.session.query(
            MemMediaReaction.emoji, func.count(MemMediaReaction.id)
        ).filter(
            MemMediaReaction.media_id == media_id
        ).group_by(MemMediaReaction.emoji).all()
        return {emoji: count for emoji, count in rows}

    def keys_for_user(self, media_id: uuid.UUID, user_id: str) -> List[str]:
        """Emoji keys a user has reacted with."""
        rows = self.session.query(MemMediaReaction.emoji).filter(
            MemMediaReaction.media_id == media_id,
            MemMediaReaction.user_id == user_id,
        ).order_by(MemMediaReaction.emoji).all()
        return [row[0] for row in rows]


class CommentRepository(BaseRepository[MemMediaComment]):
    """Repository for MemMediaComment entities."""

    model_class = MemMediaComment

    def list_for_media(self, media_id: uuid.UUID) -> List[MemMediaComment]:
        """Comments on a media item, oldest first."""
        return self.session.query(MemMediaComment).filter(
            MemMediaComment.media_id == media_id
        ).order_by(MemMediaComment.created_at.asc()).all()
