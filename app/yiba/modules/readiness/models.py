from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.yiba.models import Base

if TYPE_CHECKING:
    from app.yiba.modules.institutions.models import Institution


class Readiness(Base):
    """
    Form 5 accreditation-readiness record.

    Nullable booleans are tri-state: None means the question has not been answered.
    """

    __tablename__ = "readiness"
    __table_args__ = (
        Index("idx_readiness_institution", "institution_id"),
        Index("idx_readiness_status", "readiness_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    institution_id: Mapped[int] = mapped_column(ForeignKey("institutions.id", ondelete="CASCADE"), nullable=False)
    readiness_status: Mapped[str] = mapped_column(String(32), nullable=False, default="NOT_STARTED")
    delivery_mode: Mapped[str] = mapped_column(String(32), nullable=False)  # FACE_TO_FACE, BLENDED, MOBILE

    # Section 2: qualification
    qualification_title: Mapped[str] = mapped_column(String(255), nullable=False)
    saqa_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    curriculum_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    nqf_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    credits: Mapped[int | None] = mapped_column(Integer, nullable=True)
    occupational_category: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Section 3.1 / 3.2
    self_assessment_completed: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    self_assessment_remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    registration_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    professional_body_registration: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    # Section 3.3 / 3.4: premises and knowledge-module resources
    training_site_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    ownership_type: Mapped[str | None] = mapped_column(String(32), nullable=True)  # OWNED, LEASED, ...
    number_of_training_rooms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    room_capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    facilitator_learner_ratio: Mapped[str | None] = mapped_column(String(16), nullable=True)

    # Section 3.6: workplace-based learning
    wbl_workplace_partner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    wbl_agreement_type: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Section 4: blended delivery
    lms_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    internet_connectivity_method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    isp: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Section 6 / 7
    lmis_functional: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    lmis_popia_compliant: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    policies_procedures_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Section 8: OHS
    fire_extinguisher_available: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    emergency_exits_marked: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    accessibility_for_disabilities: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    first_aid_kit_available: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    ohs_representative_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Section 9: learning material
    learning_material_exists: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    learning_material_coverage_percentage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    learning_material_nqf_aligned: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    knowledge_components_complete: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    practical_components_complete: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    learning_material_quality_verified: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    section_completion_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    submission_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    institution: Mapped["Institution"] = relationship("Institution", lazy="selectin")
    recommendation: Mapped["ReadinessRecommendation | None"] = relationship(
        "ReadinessRecommendation",
        back_populates="readiness",
        uselist=False,
        lazy="selectin",
    )
    facilitators: Mapped[list["ReadinessFacilitator"]] = relationship(
        "ReadinessFacilitator",
        back_populates="readiness",
        order_by="ReadinessFacilitator.id",
        cascade="all, delete-orphan",
    )


class ReadinessRecommendation(Base):
    __tablename__ = "readiness_recommendations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    readiness_id: Mapped[int] = mapped_column(
        ForeignKey("readiness.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    recommendation: Mapped[str] = mapped_column(String(32), nullable=False)  # APPROVE, CONDITIONAL_APPROVAL, REJECT
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    recommended_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    recommended_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    readiness: Mapped[Readiness] = relationship(Readiness, back_populates="recommendation")


class ReadinessFacilitator(Base):
    """
    A facilitator named on a readiness record (Form 5 section 3.4).

    Either linked to a facilitator account of the same institution or entered by
    hand, in which case `user_id` is null.
    """

    __tablename__ = "readiness_facilitators"
    __table_args__ = (Index("idx_readiness_facilitators_readiness", "readiness_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    readiness_id: Mapped[int] = mapped_column(ForeignKey("readiness.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    last_name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    qualification: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    readiness: Mapped[Readiness] = relationship(Readiness, back_populates="facilitators")
