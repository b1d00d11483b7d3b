"""
Mem membership service.

This module provides:
- Mem creation with unique, human-friendly join codes
- Idempotent joining and public previews by join code
- Participant checks, participant listing and notes
- The user's mems ordered by recent activity
"""

import secrets
import uuid
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from ..core.config import Settings, settings as default_settings
from ..core.logging import audit_logger, get_logger, with_logging_context
from ..models.entities import Mem, MemParticipant, ParticipantRole
from ..models.repositories import (
    MediaRepository,
    MemRepository,
    NoteRepository,
    ParticipantRepository,
)
from .errors import (
    InvalidJoinCodeError,
    JoinCodeUnavailableError,
    NotFoundError,
    NotParticipantError,
    PermissionDeniedError,
)

logger = get_logger("services.mems")

# No 0/O or 1/I to keep codes readable aloud
JOIN_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
JOIN_CODE_LENGTH = 6
JOIN_CODE_ATTEMPTS = 10

MAX_NOTE_LENGTH = 2000


def generate_join_code() -> str:
    return "".join(secrets.choice(JOIN_CODE_ALPHABET) for _ in range(JOIN_CODE_LENGTH))


def parse_id(value: Any, what: str = "Mem") -> uuid.UUID:
    """Parse an id from a path or payload; malformed ids are reported as not found."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise NotFoundError(f"{what} not found")


class MemService:
    """Membership store backed by SQLAlchemy."""

    def __init__(
        self,
        session: Session,
        config: Settings = None,
        code_generator: Callable[[], str] = generate_join_code,
    ):
        self.session = session
        self.settings = config or default_settings
        self.code_generator = code_generator
        self.mems = MemRepository(session)
        self.participants = ParticipantRepository(session)
        self.notes = NoteRepository(session)
        self.media = MediaRepository(session)

    def _allocate_join_code(self) -> str:
        for _ in range(JOIN_CODE_ATTEMPTS):
            candidate = self.code_generator()
            if not self.mems.join_code_exists(candidate):
                return candidate
        raise JoinCodeUnavailableError("Could not generate a unique join code")

    def get_mem_or_404(self, mem_id: Any) -> Mem:
        mem = self.mems.get_by_id(parse_id(mem_id))
        if mem is None:
            raise NotFoundError("Mem not found")
        return mem

    def create_mem(
        self,
        user_id: str,
        name: str,
        description: Optional[str] = None,
        place: Optional[str] = None,
        is_public: bool = False,
    ) -> dict:
        """
        Create a mem and add the caller as its creator.

        Returns:
            mem_id, name, join_code and the shareable join_url
        """
        name = (name or "").strip()
        if not name:
            raise ValueError("Mem name must not be empty")

        join_code = self._allocate_join_code()
        mem = self.mems.create(
            name=name,
            description=description,
            place=place,
            is_public=is_public,
            creator_id=user_id,
            join_code=join_code,
        )
        self.participants.add(mem.id, user_id, ParticipantRole.CREATOR)

        audit_logger.log_mem_created(str(mem.id), user_id, join_code)
        return {
            "mem_id": str(mem.id),
            "name": mem.name,
            "join_code": join_code,
            "join_url": self.settings.get_join_url(join_code),
        }

    def join_mem(self, user_id: str, join_code: str) -> dict:
        """Join a mem by code. Joining again is a no-op."""
        mem = self.mems.get_by_join_code(join_code or "")
        if mem is None:
            raise InvalidJoinCodeError("Invalid code")

        existing = self.participants.get(mem.id, user_id)
        if existing is None:
            self.participants.add(mem.id, user_id, ParticipantRole.PARTICIPANT)

        audit_logger.log_mem_joined(str(mem.id), user_id, already_member=existing is not None)
        return {"mem_id": str(mem.id), "name": mem.name, "already_member": existing is not None}

    def get_mem_by_join_code(self, join_code: str) -> Optional[dict]:
        """Public preview of a mem for someone holding its code."""
        mem = self.mems.get_by_join_code(join_code or "")
        return mem.to_preview() if mem else None

    def get_mem(self, mem_id: Any) -> Optional[dict]:
        try:
            mem = self.mems.get_by_id(parse_id(mem_id))
        except NotFoundError:
            return None
        if mem is None:
            return None
        details = mem.to_dict()
        details["join_url"] = self.settings.get_join_url(mem.join_code)
        return details

    def is_member(self, mem_id: Any, user_id: str) -> bool:
        try:
            mem_uuid = parse_id(mem_id)
        except NotFoundError:
            return False
        return self.participants.get(mem_uuid, user_id) is not None

    def is_participant(self, user_id: str, mem_id: Any) -> bool:
        return self.is_member(mem_id, user_id)

    def require_participant(self, user_id: str, mem_id: Any) -> MemParticipant:
        """Return the caller's membership row or raise NotParticipantError."""
        participant = self.participants.get(parse_id(mem_id), user_id)
        if participant is None:
            raise NotParticipantError("Not a participant")
        return participant

    def list_participants(self, user_id: str, mem_id: Any) -> list[dict]:
        self.require_participant(user_id, mem_id)
        return [p.to_dict() for p in self.participants.list_for_mem(parse_id(mem_id))]

    def add_note(self, user_id: str, mem_id: Any, content: str) -> dict:
        content = (content or "").strip()
        if not content:
            raise ValueError("Note must not be empty")
        if len(content) > MAX_NOTE_LENGTH:
            raise ValueError(f"Note must be at most {MAX_NOTE_LENGTH} characters")

        self.require_participant(user_id, mem_id)
        note = self.notes.create(mem_id=parse_id(mem_id), user_id=user_id, content=content)
        return note.to_dict()

    def list_notes(self, user_id: str, mem_id: Any) -> list[dict]:
        """Notes of a mem, newest first."""
        self.require_participant(user_id, mem_id)
        return [note.to_dict() for note in self.notes.list_for_mem(parse_id(mem_id))]

    def get_user_top_mems(self, user_id: str, limit: int = 10) -> list[dict]:
        """Mems the user belongs to, most recently created or joined first."""
        entries = []
        for participation in self.participants.list_for_user(user_id):
            mem = participation.mem
            if mem is None:
                continue
            entries.append((
                max(mem.created_at, participation.joined_at),
                {
                    **mem.to_preview(),
                    "join_code": mem.join_code,
                    "created_at": mem.created_at.isoformat(),
                    "ended_at": mem.ended_at.isoformat() if mem.ended_at else None,
                    "is_creator": participation.role is ParticipantRole.CREATOR,
                    "joined_at": participation.joined_at.isoformat(),
                    "media_count": self.media.count_for_mem(mem.id),
                    "participant_count": self.participants.count_for_mem(mem.id),
                },
            ))

        entries.sort(key=lambda entry: entry[0], reverse=True)
        return [entry for _, entry in entries[:max(limit, 0)]]

    def end_mem(self, user_id: str, mem_id: Any) -> dict:
        """Close a mem for uploads. Only its creator may do this."""
        mem = self.get_mem_or_404(mem_id)
        if mem.creator_id != user_id:
            raise PermissionDeniedError("Only the creator can end this mem")

        with with_logging_context(user_id=user_id, mem_id=str(mem.id)):
            if mem.ended_at is None:
                self.mems.mark_ended(mem)
                logger.info("Mem ended")
        return mem.to_dict()
