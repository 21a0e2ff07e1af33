"""Tracking link - maps a Whop plan to the funnel block that sold it."""

import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from sqlalchemy import String, DateTime, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class TrackingLink(Base):
    __tablename__ = "tracking_links"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    plan_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)

    funnel_id: Mapped[str] = mapped_column(String(255), nullable=False)
    block_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    experience_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    meta: Mapped[Dict[str, Any]] = mapped_column(
        "metadata",
        JSON,
        default=dict,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<TrackingLink plan={self.plan_id} funnel={self.funnel_id}>"
