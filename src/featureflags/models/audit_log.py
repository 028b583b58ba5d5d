from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, Text, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from featureflags.models.base import Base
from featureflags.models.flag import FlagId

AUDIT_ACTION_VALUES = ("create", "enable", "disable", "cascade_disable", "update")


class AuditLog(Base):
    """Append-only; rows are never updated or deleted by the service."""
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(FlagId, primary_key=True, autoincrement=True)
    flag_id: Mapped[int] = mapped_column(
        FlagId, ForeignKey("flags.id", ondelete="CASCADE"), nullable=False
    )
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    actor: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint(
            f"action in {AUDIT_ACTION_VALUES}",
            name="audit_logs_action_check",
        ),
        Index("ix_audit_logs_flag_created", "flag_id", "created_at"),
        Index("ix_audit_logs_created_at", "created_at"),
    )
