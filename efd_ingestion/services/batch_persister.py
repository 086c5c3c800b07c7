"""
Batched, idempotent persistence of classified rows.

Contract:
    Rows are buffered per category (bounded by ``batch_size``).  A flush is
    one ``INSERT ... ON CONFLICT DO NOTHING RETURNING id`` into the category
    table, followed by a claim-guarded increment of the category counter by
    the number of rows actually inserted, followed by COMMIT.

Guarantees:
    - Replaying lines that were already committed inserts nothing and adds
      nothing to the counters.
    - A failed write is rolled back and surfaces as PersistenceError; the
      buffers of the failed invocation are discarded with it.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from efd_ingestion.domain.types import ClassifiedRow, RowCategory
from efd_ingestion.models.records import (
    AssetConsumptionRecordModel,
    FreightRecordModel,
    GoodsRecordModel,
    ServiceRecordModel,
    UtilityRecordModel,
)
from efd_ingestion.services.job_repository import Claim, ImportJobRepository
from efd_kernel.db.upsert import insert_ignoring_conflicts
from efd_kernel.exceptions import JobClaimLostError, PersistenceError
from efd_kernel.logging_config import get_logger
from efd_kernel.models.branch import ParticipantModel

logger = get_logger("ingestion.persister")

CATEGORY_TABLES: dict[RowCategory, tuple[type, tuple[str, ...]]] = {
    RowCategory.GOODS: (GoodsRecordModel, ("import_job_id", "source_line")),
    RowCategory.SERVICES: (ServiceRecordModel, ("import_job_id", "source_line")),
    RowCategory.ENERGY_WATER: (UtilityRecordModel, ("import_job_id", "source_line")),
    RowCategory.FREIGHT: (FreightRecordModel, ("import_job_id", "source_line")),
    RowCategory.FIXED_ASSET: (AssetConsumptionRecordModel, ("import_job_id", "source_line")),
    RowCategory.USAGE_CONSUMPTION: (AssetConsumptionRecordModel, ("import_job_id", "source_line")),
    RowCategory.PARTICIPANTS: (ParticipantModel, ("branch_id", "participant_code")),
}


class BatchPersister:
    """Buffers rows of one job and writes them in bounded batches."""

    def __init__(
        self,
        session: Session,
        repository: ImportJobRepository,
        claim: Claim,
        actor_id: UUID,
        batch_size: int = 1000,
    ):
        self._session = session
        self._repository = repository
        self._claim = claim
        self._actor_id = actor_id
        self._batch_size = batch_size
        self._buffers: dict[RowCategory, list[ClassifiedRow]] = defaultdict(list)
        self.inserted: dict[RowCategory, int] = defaultdict(int)

    @property
    def pending(self) -> int:
        return sum(len(rows) for rows in self._buffers.values())

    def add(self, row: ClassifiedRow) -> None:
        buffer = self._buffers[row.category]
        buffer.append(row)
        if len(buffer) >= self._batch_size:
            self.flush(row.category)

    def flush_all(self) -> None:
        for category in list(self._buffers):
            self.flush(category)

    def flush(self, category: RowCategory) -> int:
        """Write the buffer of ``category``; returns rows actually inserted."""
        rows = self._buffers.pop(category, [])
        if not rows:
            return 0

        model, conflict_columns = CATEGORY_TABLES[category]
        try:
            inserted_ids = insert_ignoring_conflicts(
                self._session,
                model,
                [self._to_values(category, row) for row in rows],
                conflict_columns,
            )
            inserted = len(inserted_ids)
            self._repository.increment_count(self._claim, category, inserted)
            self._session.commit()
        except JobClaimLostError:
            self._session.rollback()
            raise
        except SQLAlchemyError as exc:
            self._session.rollback()
            logger.warning(
                "batch_write_failed",
                extra={"category": category.value, "rows": len(rows)},
                exc_info=True,
            )
            raise PersistenceError(model.__tablename__, str(exc)) from exc

        self.inserted[category] += inserted
        logger.debug(
            "batch_written",
            extra={
                "category": category.value,
                "rows": len(rows),
                "inserted": inserted,
                "duplicates": len(rows) - inserted,
            },
        )
        return inserted

    def _to_values(self, category: RowCategory, row: ClassifiedRow) -> dict[str, Any]:
        values = dict(row.values)
        values["id"] = uuid4()
        values["created_by_id"] = self._actor_id
        if category is not RowCategory.PARTICIPANTS:
            values["import_job_id"] = self._claim.job_id
            values["source_line"] = row.source_line
        return values
