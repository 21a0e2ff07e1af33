"""Message model - one chat line in a conversation."""

import uuid
from datetime import datetime, timezone
from typing import Dict, Any

from sqlalchemy import String, DateTime, ForeignKey, Text, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.funnel.states import MessageType


class Message(Base):
    """
    Message table.
    Owner replies are stored as type "bot" with senderType "owner" in metadata.
    """

    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    type: Mapped[str] = mapped_column(
        String(20),
        default=MessageType.BOT.value,
        nullable=False,
    )

    content: Mapped[str] = mapped_column(Text, nullable=False)

    meta: Mapped[Dict[str, Any]] = mapped_column(
        "metadata",
        JSON,
        default=dict,
        nullable=False,
    )

    conversation: Mapped["Conversation"] = relationship(back_populates="messages")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<Message {self.type}: {self.content[:30]}>"

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "type": self.type,
            "content": self.content,
            "metadata": self.meta or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
