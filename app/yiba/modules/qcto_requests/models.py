from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.yiba.models import Base

if TYPE_CHECKING:
    from app.yiba.modules.institutions.models import Institution


class QCTORequest(Base):
    """QCTO-initiated request for access to institution records."""

    __tablename__ = "qcto_requests"
    __table_args__ = (
        Index("idx_qcto_requests_institution", "institution_id"),
        Index("idx_qcto_requests_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    institution_id: Mapped[int] = mapped_column(ForeignKey("institutions.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")  # PENDING, APPROVED, REJECTED

    requested_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    response_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    institution: Mapped["Institution"] = relationship("Institution", lazy="selectin")
    resources: Mapped[list["QCTORequestResource"]] = relationship(
        "QCTORequestResource",
        back_populates="request",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class QCTORequestResource(Base):
    __tablename__ = "qcto_request_resources"
    __table_args__ = (Index("idx_qcto_request_resources_lookup", "resource_type", "resource_id_value"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_id: Mapped[int] = mapped_column(ForeignKey("qcto_requests.id", ondelete="CASCADE"), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(32), nullable=False)
    resource_id_value: Mapped[str] = mapped_column(String(64), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    request: Mapped[QCTORequest] = relationship(QCTORequest, back_populates="resources")
