"""
Category tables written by the Batch Persister.

Every table is keyed for idempotent replay on (import_job_id, source_line):
a line reprocessed after an interrupted invocation hits the unique key and
is skipped instead of duplicated.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from efd_kernel.db.base import TrackedBase, UUIDString


class _LedgerRowMixin:
    """Columns shared by every category table."""

    @declared_attr
    def import_job_id(cls) -> Mapped[UUID]:
        return mapped_column(
            UUIDString(),
            ForeignKey("import_jobs.id", ondelete="CASCADE"),
            nullable=False,
        )

    @declared_attr
    def branch_id(cls) -> Mapped[UUID]:
        return mapped_column(UUIDString(), ForeignKey("branches.id"), nullable=False)

    period: Mapped[date] = mapped_column(Date, nullable=False)
    source_line: Mapped[int] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    icms: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    pis: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    cofins: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)


def _row_keys(table: str) -> tuple:
    return (
        UniqueConstraint("import_job_id", "source_line", name=f"uq_{table}_job_line"),
        Index(f"idx_{table}_branch_period", "branch_id", "period"),
    )


class GoodsRecordModel(_LedgerRowMixin, TrackedBase):
    """C100 invoices and C600 consolidated sales."""

    __tablename__ = "goods_records"
    __table_args__ = _row_keys("goods_records")

    source_record: Mapped[str] = mapped_column(String(4), nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    participant_code: Mapped[str | None] = mapped_column(String(60), nullable=True)
    document_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    ipi: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)


class ServiceRecordModel(_LedgerRowMixin, TrackedBase):
    """A100 service documents."""

    __tablename__ = "service_records"
    __table_args__ = _row_keys("service_records")

    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    document_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    iss: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)


class UtilityRecordModel(_LedgerRowMixin, TrackedBase):
    """C500 energy, water, gas and communication bills."""

    __tablename__ = "utility_records"
    __table_args__ = _row_keys("utility_records")

    operation_type: Mapped[str] = mapped_column(String(10), nullable=False)
    service_type: Mapped[str] = mapped_column(String(20), nullable=False)
    supplier_taxpayer_id: Mapped[str | None] = mapped_column(String(14), nullable=True)


class FreightRecordModel(_LedgerRowMixin, TrackedBase):
    """D100 and D500 transport/communication documents."""

    __tablename__ = "freight_records"
    __table_args__ = _row_keys("freight_records")

    source_record: Mapped[str] = mapped_column(String(4), nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    carrier_taxpayer_id: Mapped[str | None] = mapped_column(String(14), nullable=True)


class AssetConsumptionRecordModel(_LedgerRowMixin, TrackedBase):
    """C170 items classified as usage-consumption or fixed-asset."""

    __tablename__ = "asset_consumption_records"
    __table_args__ = _row_keys("asset_consumption_records") + (
        Index("idx_asset_consumption_category", "category"),
    )

    category: Mapped[str] = mapped_column(String(30), nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    participant_code: Mapped[str | None] = mapped_column(String(60), nullable=True)
    document_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    item_number: Mapped[str | None] = mapped_column(String(10), nullable=True)
    item_code: Mapped[str | None] = mapped_column(String(60), nullable=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    fiscal_code: Mapped[str] = mapped_column(String(4), nullable=False)
    ipi: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
