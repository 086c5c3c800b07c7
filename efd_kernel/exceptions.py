"""
Typed exception hierarchy for the ledger import pipeline.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from EfdImportError:

    EfdImportError (base)
    |
    +-- ConfigurationError
    |
    +-- LedgerValidationError          fatal to the job, never retried
    |   +-- HeaderNotFoundError
    |   +-- InvalidTaxpayerIdError
    |   +-- MalformedRecordError
    |   +-- TrailerMismatchError
    |
    +-- SourceUnavailableError         ledger file missing or forbidden, never retried
    |
    +-- ImportJobError
    |   +-- ImportJobNotFoundError
    |   +-- InvalidJobTransitionError
    |   +-- JobClaimLostError
    |   +-- InvalidIntakeError
    |
    +-- TransientInfrastructureError   retried with backoff
        +-- PersistenceError
        +-- BlobReadError
        +-- DispatchError
        +-- ViewRefreshError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Config          | CONFIGURATION_ERROR         | YAML/env value missing or out of range
----------------|-----------------------------|-----------------------------------------
Validation      | HEADER_NOT_FOUND            | No 0000 record in the probed prefix
                | INVALID_TAXPAYER_ID         | Header CNPJ is not 14 valid digits
                | MALFORMED_RECORD            | Line is not a pipe-delimited record
                | TRAILER_MISMATCH            | 9999 count differs (strict policy only)
----------------|-----------------------------|-----------------------------------------
Source          | SOURCE_UNAVAILABLE          | Ledger file not found or access denied
----------------|-----------------------------|-----------------------------------------
Job             | IMPORT_JOB_NOT_FOUND        | Job id does not exist
                | INVALID_JOB_TRANSITION      | Status change not in the transition table
                | JOB_CLAIM_LOST              | Another invocation owns the job now
                | INVALID_INTAKE              | Intake payload rejected
----------------|-----------------------------|-----------------------------------------
Transient       | PERSISTENCE_ERROR           | Batch write or job update failed
                | BLOB_READ_ERROR             | Ranged read of the ledger file failed
                | DISPATCH_ERROR              | Continuation could not be enqueued
                | VIEW_REFRESH_ERROR          | Aggregate refresh request failed

===============================================================================
HANDLING PATTERNS
===============================================================================

The pipeline converts every fatal condition into an ``error_message`` on the
Job Record.  Nothing propagates back to the intake caller once the job exists:

    try:
        pipeline.run_invocation(job_id)
    except LedgerValidationError:
        # already recorded as failed by the pipeline
        ...

Catch categories, not messages:

    except TransientInfrastructureError as e:
        scheduler.schedule(job_id, attempt=retry_count)
"""

from uuid import UUID


class EfdImportError(Exception):
    """
    Base exception for all import pipeline errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    identification.
    """

    code: str = "EFD_IMPORT_ERROR"


class ConfigurationError(EfdImportError):
    """Pipeline configuration is invalid."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration for {key!r}: {reason}")


# Validation errors (fatal)


class LedgerValidationError(EfdImportError):
    """Base for content errors in the ledger file. Never retried."""

    code: str = "LEDGER_VALIDATION_ERROR"


class HeaderNotFoundError(LedgerValidationError):
    """No header record in the probed prefix of the file."""

    code: str = "HEADER_NOT_FOUND"

    def __init__(self, file_path: str, probe_bytes: int):
        self.file_path = file_path
        self.probe_bytes = probe_bytes
        super().__init__(
            f"Header record 0000 not found in the first {probe_bytes} bytes of {file_path}"
        )


class InvalidTaxpayerIdError(LedgerValidationError):
    """Taxpayer identifier failed the length/format check."""

    code: str = "INVALID_TAXPAYER_ID"

    def __init__(self, raw_value: str, reason: str):
        self.raw_value = raw_value
        self.reason = reason
        super().__init__(f"Invalid taxpayer id {raw_value!r}: {reason}")


class MalformedRecordError(LedgerValidationError):
    """A line is not a structurally valid record."""

    code: str = "MALFORMED_RECORD"

    def __init__(self, line_ordinal: int, reason: str, record_type: str | None = None):
        self.line_ordinal = line_ordinal
        self.reason = reason
        self.record_type = record_type
        where = f"line {line_ordinal}"
        if record_type:
            where = f"{where} ({record_type})"
        super().__init__(f"Malformed record at {where}: {reason}")


class TrailerMismatchError(LedgerValidationError):
    """Trailer line count differs from the lines read (strict policy)."""

    code: str = "TRAILER_MISMATCH"

    def __init__(self, declared_lines: int, counted_lines: int):
        self.declared_lines = declared_lines
        self.counted_lines = counted_lines
        super().__init__(
            f"Trailer declares {declared_lines} lines but {counted_lines} were read"
        )


# Job lifecycle errors


class ImportJobError(EfdImportError):
    """Base for job lifecycle errors."""

    code: str = "IMPORT_JOB_ERROR"


class ImportJobNotFoundError(ImportJobError):
    """Job id does not exist."""

    code: str = "IMPORT_JOB_NOT_FOUND"

    def __init__(self, job_id: UUID):
        self.job_id = job_id
        super().__init__(f"Import job not found: {job_id}")


class InvalidJobTransitionError(ImportJobError):
    """Requested status change is not allowed."""

    code: str = "INVALID_JOB_TRANSITION"

    def __init__(self, job_id: UUID, from_status: str, to_status: str):
        self.job_id = job_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Import job {job_id} cannot move from {from_status} to {to_status}"
        )


class JobClaimLostError(ImportJobError):
    """The claim held by this invocation is no longer valid."""

    code: str = "JOB_CLAIM_LOST"

    def __init__(self, job_id: UUID, claim_token: str):
        self.job_id = job_id
        self.claim_token = claim_token
        super().__init__(f"Claim {claim_token} on import job {job_id} was lost")


class InvalidIntakeError(ImportJobError):
    """Intake payload rejected before a job is created."""

    code: str = "INVALID_INTAKE"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid import request: {reason}")


# Source errors


class SourceUnavailableError(EfdImportError):
    """The ledger file does not exist or may not be read. Retrying cannot help."""

    code: str = "SOURCE_UNAVAILABLE"

    def __init__(self, file_path: str, reason: str):
        self.file_path = file_path
        self.reason = reason
        super().__init__(f"Ledger file {file_path} is unavailable: {reason}")


# Transient infrastructure errors


class TransientInfrastructureError(EfdImportError):
    """Base for errors that a later attempt may not hit."""

    code: str = "TRANSIENT_INFRASTRUCTURE_ERROR"


class PersistenceError(TransientInfrastructureError):
    """A batch write or job update failed."""

    code: str = "PERSISTENCE_ERROR"

    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"Write to {target} failed: {reason}")


class BlobReadError(TransientInfrastructureError):
    """Reading the uploaded ledger file failed."""

    code: str = "BLOB_READ_ERROR"

    def __init__(self, file_path: str, reason: str):
        self.file_path = file_path
        self.reason = reason
        super().__init__(f"Could not read {file_path}: {reason}")


class DispatchError(TransientInfrastructureError):
    """A continuation could not be handed to the scheduler transport."""

    code: str = "DISPATCH_ERROR"

    def __init__(self, job_id: UUID, reason: str):
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Could not dispatch continuation for job {job_id}: {reason}")


class ViewRefreshError(TransientInfrastructureError):
    """The aggregate refresh request failed."""

    code: str = "VIEW_REFRESH_ERROR"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"View refresh failed: {reason}")
