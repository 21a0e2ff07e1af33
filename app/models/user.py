"""User model - a Whop user inside one experience."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Integer, Boolean, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.funnel.states import AccessLevel


class User(Base):
    """
    User table. The same Whop user gets one row per experience.
    """

    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("whop_user_id", "experience_id", name="uq_users_whop_user_experience"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    whop_user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )

    experience_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("experiences.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    email: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    name: Mapped[str] = mapped_column(String(255), default="Unknown User", nullable=False)
    avatar: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Generation credits; regeneration costs one
    credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    access_level: Mapped[str] = mapped_column(
        String(20),
        default=AccessLevel.CUSTOMER.value,
        nullable=False,
    )

    # One-time Whop product import done
    products_synced: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    experience: Mapped["Experience"] = relationship(back_populates="users")

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
        return f"<User {self.whop_user_id} access={self.access_level}>"

    @property
    def is_admin(self) -> bool:
        return self.access_level == AccessLevel.ADMIN.value
