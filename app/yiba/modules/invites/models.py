from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.yiba.models import Base

if TYPE_CHECKING:
    from app.yiba.modules.institutions.models import Institution


class Invite(Base):
    __tablename__ = "invites"
    __table_args__ = (
        Index("idx_invites_email", "email"),
        Index("idx_invites_status_created", "status", "created_at"),
        Index("idx_invites_campaign", "campaign_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    role: Mapped[str] = mapped_column(String(64), nullable=False)
    institution_id: Mapped[int | None] = mapped_column(ForeignKey("institutions.id", ondelete="CASCADE"), nullable=True)
    default_province: Mapped[str | None] = mapped_column(String(64), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    # QUEUED, SENDING, SENT, RETRYING, FAILED, ACCEPTED, EXPIRED, REVOKED
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="QUEUED")
    invited_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    # delivery bookkeeping
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    accepted_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    campaign_id: Mapped[int | None] = mapped_column(ForeignKey("invite_campaigns.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    institution: Mapped["Institution | None"] = relationship("Institution", lazy="selectin")
    campaign: Mapped["InviteCampaign | None"] = relationship("InviteCampaign", back_populates="invites")

    @property
    def domain(self) -> str:
        return self.email.rsplit("@", 1)[-1].lower()


class InviteCampaign(Base):
    __tablename__ = "invite_campaigns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    audience_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # DRAFT, SENDING, PAUSED, COMPLETED, CANCELLED
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="DRAFT")
    send_settings: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    total_recipients: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    invites: Mapped[list[Invite]] = relationship(Invite, back_populates="campaign", lazy="selectin")
