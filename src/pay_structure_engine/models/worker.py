"""Worker pay structure assignment and override models."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pay_structure_engine.models.base import Base, TimestampMixin
from pay_structure_engine.models.template import PayStructureTemplate


class WorkerPayStructure(Base, TimestampMixin):
    """A worker's assignment to a template version."""

    __tablename__ = "worker_pay_structure"

    worker_structure_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    worker_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    template_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_structure_template.template_id"),
        nullable=False,
    )
    template_version: Mapped[str] = mapped_column(String(20), nullable=False)

    base_salary: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    hourly_rate: Mapped[Decimal | None] = mapped_column(Numeric(10, 4), nullable=True)
    pay_frequency: Mapped[str | None] = mapped_column(String(20), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    assignment_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "effective_to IS NULL OR effective_to >= effective_from",
            name="worker_pay_structure_dates_check",
        ),
    )

    # Relationships
    template: Mapped[PayStructureTemplate] = relationship()
    overrides: Mapped[list[WorkerComponentOverride]] = relationship(
        back_populates="worker_structure",
        cascade="all, delete-orphan",
    )


class WorkerComponentOverride(Base, TimestampMixin):
    """Worker-specific change to one component of the assigned template."""

    __tablename__ = "worker_component_override"

    override_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    worker_structure_id: Mapped[UUID] = mapped_column(
        ForeignKey("worker_pay_structure.worker_structure_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    component_code: Mapped[str] = mapped_column(String(50), nullable=False)
    override_type: Mapped[str] = mapped_column(String(20), nullable=False)

    override_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    override_percentage: Mapped[Decimal | None] = mapped_column(Numeric(10, 6), nullable=True)
    override_formula: Mapped[str | None] = mapped_column(Text, nullable=True)
    override_rate: Mapped[Decimal | None] = mapped_column(Numeric(10, 4), nullable=True)
    override_condition: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    min_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    max_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    is_disabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    override_reason: Mapped[str] = mapped_column(Text, nullable=False)
    effective_from: Mapped[date | None] = mapped_column(Date, nullable=True)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "worker_structure_id", "component_code", name="worker_component_override_unique"
        ),
        CheckConstraint(
            "override_type IN ('amount', 'percentage', 'formula', 'rate', 'disabled', 'condition')",
            name="worker_component_override_type_check",
        ),
    )

    # Relationships
    worker_structure: Mapped[WorkerPayStructure] = relationship(back_populates="overrides")
