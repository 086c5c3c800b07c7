"""
efd_ingestion -- resumable import of SPED EFD ledger files.

Provides header extraction, chunked streaming of the uploaded file,
record interpretation and fiscal-code classification, idempotent batched
persistence into category tables, and the Job Record that carries all
state between bounded invocations.

Architecture:
    efd_ingestion/ depends on efd_kernel and efd_config only.  Continuation
    scheduling and view refresh transports live in efd_batch.
"""
