"""Funnel model - a chatbot flow plus its resources and deployment state."""

import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from sqlalchemy import String, DateTime, ForeignKey, Integer, Boolean, Text, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.funnel.states import GenerationStatus


class Funnel(Base):
    """
    Funnel table.

    At most one funnel per (experience, whop_product_id) should be deployed;
    this is checked before deploying, not enforced by a constraint.
    """

    __tablename__ = "funnels"

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

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # FunnelFlow JSON, see app.funnel.flow
    flow: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    is_deployed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    was_ever_deployed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    generation_status: Mapped[str] = mapped_column(
        String(20),
        default=GenerationStatus.IDLE.value,
        nullable=False,
    )

    # Conversations started from this funnel
    sends: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Discovery page product this funnel is attached to
    whop_product_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )

    funnel_resources: Mapped[list["FunnelResource"]] = relationship(
        back_populates="funnel",
        cascade="all, delete-orphan",
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
        return f"<Funnel {self.name} deployed={self.is_deployed}>"

    def to_dict(self, resources: Optional[list] = None) -> Dict[str, Any]:
        data = {
            "id": str(self.id),
            "name": self.name,
            "description": self.description,
            "flow": self.flow,
            "is_deployed": self.is_deployed,
            "was_ever_deployed": self.was_ever_deployed,
            "generation_status": self.generation_status,
            "sends": self.sends,
            "whop_product_id": self.whop_product_id,
            "user_id": str(self.user_id),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if resources is not None:
            data["resources"] = [r.to_dict() for r in resources]
        return data
