from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

if TYPE_CHECKING:
    from app.yiba.modules.institutions.models import Institution


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        Index("idx_users_role", "role"),
        Index("idx_users_institution", "institution_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)

    role: Mapped[str] = mapped_column(String(64), nullable=False)  # see app.yiba.constants
    institution_id: Mapped[int | None] = mapped_column(
        ForeignKey("institutions.id", ondelete="SET NULL"), nullable=True
    )
    # QCTO province scoping
    default_province: Mapped[str | None] = mapped_column(String(64), nullable=True)
    assigned_provinces: Mapped[list | None] = mapped_column(JSON, nullable=True, default=list)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    institution: Mapped["Institution | None"] = relationship("Institution", lazy="selectin")

    @property
    def full_name(self) -> str:
        name = " ".join(p for p in (self.first_name, self.last_name) if p)
        return name or self.email

    @property
    def provinces(self) -> list[str]:
        return list(self.assigned_provinces or [])


class AuditLog(Base):
    """
    Field-level audit row, written in the same transaction as the mutation it describes.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_institution", "institution_id"),
        Index("idx_audit_changed_at", "changed_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)  # string so non-int keys fit
    field_name: Mapped[str] = mapped_column(String(128), nullable=False)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    change_type: Mapped[str] = mapped_column(String(32), nullable=False)

    changed_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    role_at_time: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    institution_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    related_submission_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    changed_by_user: Mapped[User | None] = relationship(User, lazy="selectin")


class PasswordResetToken(Base):
    __tablename__ = "password_reset_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.yiba.modules.institutions.models import Institution, Qualification  # noqa: E402,F401
from app.yiba.modules.learners.models import Enrolment, Learner  # noqa: E402,F401
from app.yiba.modules.readiness.models import Readiness, ReadinessFacilitator, ReadinessRecommendation  # noqa: E402,F401
from app.yiba.modules.documents.models import Document, EvidenceFlag  # noqa: E402,F401
from app.yiba.modules.submissions.models import Submission, SubmissionResource  # noqa: E402,F401
from app.yiba.modules.qcto_requests.models import QCTORequest, QCTORequestResource  # noqa: E402,F401
from app.yiba.modules.reviews.models import ReviewAssignment  # noqa: E402,F401
from app.yiba.modules.notifications.models import EmailQueue, Notification  # noqa: E402,F401
from app.yiba.modules.email_templates.models import EmailTemplate  # noqa: E402,F401
from app.yiba.modules.invites.models import Invite, InviteCampaign  # noqa: E402,F401
from app.yiba.modules.issues.models import IssueReport  # noqa: E402,F401
