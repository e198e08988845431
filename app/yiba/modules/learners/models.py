from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.yiba.models import Base

if TYPE_CHECKING:
    from app.yiba.modules.institutions.models import Institution, Qualification


class Learner(Base):
    __tablename__ = "learners"
    __table_args__ = (
        Index("idx_learners_institution", "institution_id"),
        Index("idx_learners_name", "last_name", "first_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    institution_id: Mapped[int] = mapped_column(ForeignKey("institutions.id", ondelete="CASCADE"), nullable=False)
    # student account linked to this record (self-service views)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    national_id: Mapped[str] = mapped_column(String(13), nullable=False, unique=True)
    alternate_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    middle_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str] = mapped_column(String(128), nullable=False)
    birth_date: Mapped[date] = mapped_column(Date, nullable=False)
    gender_code: Mapped[str] = mapped_column(String(8), nullable=False)
    nationality_code: Mapped[str] = mapped_column(String(8), nullable=False)
    home_language_code: Mapped[str | None] = mapped_column(String(8), nullable=True)
    disability_status: Mapped[str] = mapped_column(String(32), nullable=False, default="NONE")
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # POPIA
    popia_consent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    consent_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    institution: Mapped["Institution"] = relationship("Institution", lazy="selectin")
    enrolments: Mapped[list["Enrolment"]] = relationship(
        "Enrolment",
        back_populates="learner",
        lazy="selectin",
        order_by="Enrolment.start_date.desc()",
    )

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.middle_name, self.last_name) if p)


class Enrolment(Base):
    __tablename__ = "enrolments"
    __table_args__ = (
        Index("idx_enrolments_learner", "learner_id"),
        Index("idx_enrolments_institution", "institution_id"),
        Index("idx_enrolments_status", "enrolment_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    learner_id: Mapped[int] = mapped_column(ForeignKey("learners.id", ondelete="CASCADE"), nullable=False)
    institution_id: Mapped[int] = mapped_column(ForeignKey("institutions.id", ondelete="CASCADE"), nullable=False)
    qualification_id: Mapped[int | None] = mapped_column(
        ForeignKey("qualifications.id", ondelete="SET NULL"), nullable=True
    )
    qualification_title: Mapped[str] = mapped_column(String(255), nullable=False)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    expected_completion_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    completed_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    enrolment_status: Mapped[str] = mapped_column(String(32), nullable=False, default="ACTIVE")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    learner: Mapped[Learner] = relationship(Learner, back_populates="enrolments", lazy="selectin")
    qualification: Mapped["Qualification | None"] = relationship("Qualification", lazy="selectin")
