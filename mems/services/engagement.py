"""
Reactions and comments on mem media.

Reaction counts and the weighted engagement score are denormalized onto
the media row and recomputed on every toggle.
"""

from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.logging import get_logger
from ..models.entities import MemMedia
from ..models.repositories import (
    CommentRepository,
    MediaRepository,
    ParticipantRepository,
    ReactionRepository,
)
from ..observability.metrics import metrics
from .emoji import compute_score, normalize_emoji
from .errors import NotFoundError, NotParticipantError
from .mems import parse_id

logger = get_logger("services.engagement")

MAX_COMMENT_LENGTH = 1000


class EngagementService:
    """Reaction/comment store; every operation requires membership of the media's mem."""

    def __init__(self, session: Session):
        self.session = session
        self.media = MediaRepository(session)
        self.participants = ParticipantRepository(session)
        self.reactions = ReactionRepository(session)
        self.comments = CommentRepository(session)

    def _get_media(self, user_id: str, media_id: Any) -> MemMedia:
        media = self.media.get_by_id(parse_id(media_id, "Media"))
        if media is None:
            raise NotFoundError("Media not found")
        if self.participants.get(media.mem_id, user_id) is None:
            raise NotParticipantError("Not a participant")
        return media

    def _refresh_engagement(self, media: MemMedia) -> None:
        counts = self.reactions.counts_for_media(media.id)
        media.reaction_counts = counts
        media.score = compute_score(counts)
        self.session.flush()

    def toggle_reaction(self, user_id: str, media_id: Any, emoji: str) -> dict:
        """
        Add the caller's reaction, or remove it when already present.

        Args:
            emoji: Emoji key ("heart") or glyph ("❤️")

        Raises:
            ValueError: If the emoji is not one of the supported reactions
        """
        key = normalize_emoji(emoji)
        if key is None:
            raise ValueError(f"Unsupported emoji: {emoji!r}")

        media = self._get_media(user_id, media_id)
        existing = self.reactions.get(media.id, user_id, key)
        if existing is not None:
            self.session.delete(existing)
            self.session.flush()
            active = False
        else:
            try:
                with self.session.begin_nested():
                    self.reactions.create(media_id=media.id, user_id=user_id, emoji=key)
            except IntegrityError:
                # a concurrent toggle inserted the same reaction first
                logger.info("Reaction already present", media_id=str(media.id), emoji=key)
            active = True

        self._refresh_engagement(media)
        metrics.track_reaction(key, active)
        logger.debug("Reaction toggled", media_id=str(media.id), emoji=key, active=active)

        return {
            "media_id": str(media.id),
            "emoji": key,
            "active": active,
            "reaction_counts": dict(media.reaction_counts),
            "score": media.score,
        }

    def get_reactions(self, user_id: str, media_id: Any) -> dict:
        media = self._get_media(user_id, media_id)
        return {
            "media_id": str(media.id),
            "reaction_counts": dict(media.reaction_counts or {}),
            "score": media.score,
            "user_reactions": self.reactions.keys_for_user(media.id, user_id),
        }

    def add_comment(self, user_id: str, media_id: Any, content: str) -> dict:
        content = (content or "").strip()
        if not content:
            raise ValueError("Comment must not be empty")
        if len(content) > MAX_COMMENT_LENGTH:
            raise ValueError(f"Comment must be at most {MAX_COMMENT_LENGTH} characters")

        media = self._get_media(user_id, media_id)
        comment = self.comments.create(media_id=media.id, user_id=user_id, content=content)
        return comment.to_dict()

    def list_comments(self, user_id: str, media_id: Any) -> list[dict]:
        """Comments, oldest first."""
        media = self._get_media(user_id, media_id)
        return [comment.to_dict() for comment in self.comments.list_for_media(media.id)]

    def top_media(self, user_id: str, mem_id: Any, limit: int = 10) -> list[dict]:
        """Highest scoring media of a mem; ties go to the newest."""
        mem_uuid = parse_id(mem_id)
        if self.participants.get(mem_uuid, user_id) is None:
            raise NotParticipantError("Not a participant")
        return [media.to_dict() for media in self.media.list_for_mem(mem_uuid, sort="score", limit=max(limit, 1))]
