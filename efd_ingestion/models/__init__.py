"""Ingestion ORM models: Job Record and category tables."""

from efd_ingestion.models.import_job import ImportJobModel, count_columns
from efd_ingestion.models.records import (
    AssetConsumptionRecordModel,
    FreightRecordModel,
    GoodsRecordModel,
    ServiceRecordModel,
    UtilityRecordModel,
)

__all__ = [
    "ImportJobModel",
    "count_columns",
    "GoodsRecordModel",
    "ServiceRecordModel",
    "UtilityRecordModel",
    "FreightRecordModel",
    "AssetConsumptionRecordModel",
]
