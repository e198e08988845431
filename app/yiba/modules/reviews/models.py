from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.yiba.models import Base, User


class ReviewAssignment(Base):
    __tablename__ = "review_assignments"
    __table_args__ = (
        UniqueConstraint(
            "review_type", "review_id", "assigned_to", "assignment_role", name="uq_review_assignment"
        ),
        Index("idx_review_assignments_review", "review_type", "review_id"),
        Index("idx_review_assignments_assignee", "assigned_to", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    review_type: Mapped[str] = mapped_column(String(32), nullable=False)  # READINESS, SUBMISSION, QCTO_REQUEST
    review_id: Mapped[int] = mapped_column(Integer, nullable=False)
    assigned_to: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    assigned_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    assignment_role: Mapped[str] = mapped_column(String(32), nullable=False, default="REVIEWER")  # REVIEWER, AUDITOR
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="ASSIGNED")  # ASSIGNED, CANCELLED
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    assignee: Mapped[User] = relationship(User, foreign_keys=[assigned_to], lazy="selectin")
