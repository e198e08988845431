from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.yiba.models import Base

if TYPE_CHECKING:
    from app.yiba.models import User
    from app.yiba.modules.institutions.models import Institution


class IssueReport(Base):
    __tablename__ = "issue_reports"
    __table_args__ = (
        Index("idx_issue_reports_reported_by", "reported_by"),
        Index("idx_issue_reports_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    reported_by: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    institution_id: Mapped[int | None] = mapped_column(
        ForeignKey("institutions.id", ondelete="SET NULL"), nullable=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)  # BUG, DATA_ISSUE, ACCESS_ISSUE, ...
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="OPEN")
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="MEDIUM")
    page_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    assigned_to: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    # platform-admin only; never shown to the reporter
    internal_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    reporter: Mapped["User"] = relationship("User", foreign_keys=[reported_by], lazy="selectin")
    assignee: Mapped["User | None"] = relationship("User", foreign_keys=[assigned_to], lazy="selectin")
    institution: Mapped["Institution | None"] = relationship("Institution", lazy="selectin")
