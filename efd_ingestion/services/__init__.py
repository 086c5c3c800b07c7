"""Stateful services of the import pipeline (database and blob I/O)."""

from efd_ingestion.services.batch_persister import BatchPersister
from efd_ingestion.services.header_extractor import HeaderExtractor
from efd_ingestion.services.import_service import ImportService, validate_intake
from efd_ingestion.services.job_repository import Claim, ImportJobRepository
from efd_ingestion.services.pipeline import ImportPipeline
from efd_ingestion.services.progress_reporter import ProgressReporter

__all__ = [
    "BatchPersister",
    "Claim",
    "HeaderExtractor",
    "ImportJobRepository",
    "ImportPipeline",
    "ImportService",
    "ProgressReporter",
    "validate_intake",
]
