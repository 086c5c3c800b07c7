"""
Job Record ORM model.

Contract:
    One ImportJobModel per uploaded file.  Mutated only by the invocation
    currently holding ``claim_token`` (plus the external cancel request).
    ``resume_cursor`` is the byte offset of the first line whose rows are not
    yet known to be committed; it only moves forward.

Architecture: efd_ingestion/models. Imports from efd_kernel.db.base only.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from efd_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from efd_ingestion.domain.types import ImportJobStatusView, RowCategory


def count_columns() -> dict[RowCategory, str]:
    """Per-category counter column of the Job Record."""
    from efd_ingestion.domain.types import RowCategory

    return {
        RowCategory.GOODS: "goods_count",
        RowCategory.SERVICES: "services_count",
        RowCategory.ENERGY_WATER: "energy_water_count",
        RowCategory.FREIGHT: "freight_count",
        RowCategory.FIXED_ASSET: "fixed_asset_count",
        RowCategory.USAGE_CONSUMPTION: "usage_consumption_count",
        RowCategory.PARTICIPANTS: "participants_count",
    }


class ImportJobModel(TrackedBase):
    """Durable state of one ledger import."""

    __tablename__ = "import_jobs"

    __table_args__ = (
        Index("idx_import_job_status", "status"),
        Index("idx_import_job_company", "company_id"),
    )

    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    owner_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    branch_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("branches.id"),
        nullable=True,
    )

    file_path: Mapped[str] = mapped_column(String(1000), nullable=False)
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    file_size: Mapped[int] = mapped_column(nullable=False)
    import_scope: Mapped[str] = mapped_column(String(50), nullable=False)
    record_limit: Mapped[int | None] = mapped_column(nullable=True)

    status: Mapped[str] = mapped_column(String(50), nullable=False)
    progress: Mapped[int] = mapped_column(default=0, nullable=False)
    status_message: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processed_lines: Mapped[int] = mapped_column(default=0, nullable=False)
    total_lines: Mapped[int | None] = mapped_column(nullable=True)
    resume_cursor: Mapped[int] = mapped_column(default=0, nullable=False)
    chunk_number: Mapped[int] = mapped_column(default=0, nullable=False)
    retry_count: Mapped[int] = mapped_column(default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    goods_count: Mapped[int] = mapped_column(default=0, nullable=False)
    services_count: Mapped[int] = mapped_column(default=0, nullable=False)
    energy_water_count: Mapped[int] = mapped_column(default=0, nullable=False)
    freight_count: Mapped[int] = mapped_column(default=0, nullable=False)
    fixed_asset_count: Mapped[int] = mapped_column(default=0, nullable=False)
    usage_consumption_count: Mapped[int] = mapped_column(default=0, nullable=False)
    participants_count: Mapped[int] = mapped_column(default=0, nullable=False)
    skipped_records: Mapped[int] = mapped_column(default=0, nullable=False)

    parse_state: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    claim_token: Mapped[str | None] = mapped_column(String(36), nullable=True)
    claim_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def counts(self) -> dict[RowCategory, int]:
        return {category: getattr(self, column) for category, column in count_columns().items()}

    def to_status_view(self) -> ImportJobStatusView:
        from efd_ingestion.domain.types import ImportJobStatus, ImportJobStatusView

        return ImportJobStatusView(
            job_id=self.id,
            status=ImportJobStatus(self.status),
            progress=self.progress,
            status_message=self.status_message,
            processed_lines=self.processed_lines,
            total_lines=self.total_lines,
            counts=self.counts(),
            error_message=self.error_message,
            branch_id=self.branch_id,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )
