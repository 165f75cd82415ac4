"""Pay structure template, component, inclusion and resolution cache models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pay_structure_engine.models.base import Base, JSONType, TimestampMixin


class PayStructureTemplate(Base, TimestampMixin):
    """Versioned set of pay components owned by an organization."""

    __tablename__ = "pay_structure_template"

    template_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    template_code: Mapped[str] = mapped_column(String(50), nullable=False)
    template_name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    version_major: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    version_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version_patch: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    pay_frequency: Mapped[str | None] = mapped_column(String(20), nullable=True)
    is_organization_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    effective_from: Mapped[date | None] = mapped_column(Date, nullable=True)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deprecated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deprecation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "template_code",
            "version_major",
            "version_minor",
            "version_patch",
            name="pay_structure_template_version_unique",
        ),
        CheckConstraint(
            "status IN ('draft', 'active', 'deprecated', 'archived')",
            name="pay_structure_template_status_check",
        ),
        CheckConstraint(
            "pay_frequency IS NULL OR pay_frequency IN "
            "('weekly', 'biweekly', 'semimonthly', 'monthly')",
            name="pay_structure_template_frequency_check",
        ),
        CheckConstraint(
            "effective_to IS NULL OR effective_from IS NULL OR effective_to >= effective_from",
            name="pay_structure_template_dates_check",
        ),
    )

    # Relationships
    components: Mapped[list[PayStructureComponent]] = relationship(
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="PayStructureComponent.sequence_order",
    )
    inclusions: Mapped[list[PayStructureInclusion]] = relationship(
        back_populates="parent_template",
        cascade="all, delete-orphan",
        foreign_keys="PayStructureInclusion.parent_template_id",
        order_by="PayStructureInclusion.inclusion_priority",
    )

    @property
    def version_string(self) -> str:
        return f"{self.version_major}.{self.version_minor}.{self.version_patch}"


class PayStructureComponent(Base, TimestampMixin):
    """One calculable element of pay within a template."""

    __tablename__ = "pay_structure_component"

    component_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    template_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_structure_template.template_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    component_code: Mapped[str] = mapped_column(String(50), nullable=False)
    component_name: Mapped[str] = mapped_column(String(200), nullable=False)
    component_category: Mapped[str] = mapped_column(String(30), nullable=False)
    calculation_type: Mapped[str] = mapped_column(String(20), nullable=False)
    calculation_config: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)
    sequence_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    affects_gross_pay: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    affects_net_pay: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_taxable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_mandatory: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    min_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    max_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    max_per_period: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    max_annual: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)

    condition: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint("template_id", "component_code", name="pay_structure_component_code_unique"),
        CheckConstraint(
            "component_category IN ('earning', 'deduction', 'tax', 'benefit', "
            "'employer_cost', 'reimbursement')",
            name="pay_structure_component_category_check",
        ),
        CheckConstraint(
            "calculation_type IN ('fixed', 'percentage', 'formula', 'hourly_rate', "
            "'tiered', 'external')",
            name="pay_structure_component_calc_type_check",
        ),
    )

    # Relationships
    template: Mapped[PayStructureTemplate] = relationship(back_populates="components")


class PayStructureInclusion(Base, TimestampMixin):
    """Parent template includes another template by code."""

    __tablename__ = "pay_structure_inclusion"

    inclusion_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    parent_template_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_structure_template.template_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    included_template_code: Mapped[str] = mapped_column(String(50), nullable=False)
    inclusion_priority: Mapped[int] = mapped_column(Integer, nullable=False)
    merge_mode: Mapped[str] = mapped_column(String(20), nullable=False, default="merge")
    version_constraint: Mapped[str] = mapped_column(String(20), nullable=False, default="latest")
    pinned_template_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("pay_structure_template.template_id"),
        nullable=True,
    )
    component_filter: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    effective_from: Mapped[date | None] = mapped_column(Date, nullable=True)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint(
            "merge_mode IN ('merge', 'override', 'additive')",
            name="pay_structure_inclusion_merge_mode_check",
        ),
    )

    # Relationships
    parent_template: Mapped[PayStructureTemplate] = relationship(
        back_populates="inclusions", foreign_keys=[parent_template_id]
    )


class TemplateResolutionCache(Base):
    """Flattened component list per (template, version, as-of date)."""

    __tablename__ = "template_resolution_cache"

    cache_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    template_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_structure_template.template_id", ondelete="CASCADE"),
        nullable=False,
    )
    cache_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    resolved_components: Mapped[dict[str, Any]] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
