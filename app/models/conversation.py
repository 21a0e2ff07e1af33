"""Conversation model - a customer's walk through a deployed funnel."""

import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from sqlalchemy import String, DateTime, ForeignKey, Integer, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.funnel.states import ConversationStatus, ControlledBy


class Conversation(Base):
    """
    Conversation table tracking the current funnel block and live-chat state.
    Free-form owner data (notes, archive flag, assignee) lives in metadata.
    """

    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    experience_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("experiences.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    funnel_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("funnels.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Customer
    whop_user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    status: Mapped[str] = mapped_column(
        String(20),
        default=ConversationStatus.ACTIVE.value,
        nullable=False,
    )

    current_block_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Block ids visited, in order
    user_path: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)

    controlled_by: Mapped[str] = mapped_column(
        String(20),
        default=ControlledBy.BOT.value,
        nullable=False,
    )

    unread_count_admin: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unread_count_user: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    admin_last_read_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    user_last_read_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    # "metadata" is reserved on declarative classes
    meta: Mapped[Dict[str, Any]] = mapped_column(
        "metadata",
        JSON,
        default=dict,
        nullable=False,
    )

    funnel: Mapped["Funnel"] = relationship()
    messages: Mapped[list["Message"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.created_at",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Conversation {self.id} block={self.current_block_id} status={self.status}>"

    def set_meta(self, key: str, value: Any) -> None:
        """Set a metadata value."""
        # Copy so SQLAlchemy notices the JSON change
        data = dict(self.meta) if self.meta else {}
        data[key] = value
        self.meta = data

    def append_path(self, block_id: str) -> None:
        self.user_path = list(self.user_path or []) + [block_id]
