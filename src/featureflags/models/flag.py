from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, ForeignKey, Index, Integer, String, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from featureflags.models.base import Base

FLAG_STATUS_VALUES = ("enabled", "disabled")

# BIGINT on Postgres, INTEGER on SQLite so the PK stays a rowid alias (autoincrement)
FlagId = BigInteger().with_variant(Integer(), "sqlite")


class Flag(Base):
    __tablename__ = "flags"

    id: Mapped[int] = mapped_column(FlagId, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="disabled", server_default="disabled")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint(
            f"status in {FLAG_STATUS_VALUES}",
            name="flags_status_check",
        ),
    )


class FlagDependency(Base):
    """Edge (flag_id depends on depends_on_id)."""
    __tablename__ = "flag_dependencies"

    flag_id: Mapped[int] = mapped_column(
        FlagId, ForeignKey("flags.id", ondelete="CASCADE"), primary_key=True
    )
    depends_on_id: Mapped[int] = mapped_column(
        FlagId, ForeignKey("flags.id", ondelete="CASCADE"), primary_key=True
    )

    __table_args__ = (
        CheckConstraint("flag_id <> depends_on_id", name="flag_dependencies_no_self_check"),
        # forward lookups (dependencies of X) ride the PK; reverse lookups need their own index
        Index("idx_flag_dependencies_depends_on_id", "depends_on_id"),
    )
