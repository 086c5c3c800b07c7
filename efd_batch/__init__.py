"""
Continuation scheduling for the EFD import pipeline.

Drives jobs through repeated bounded invocations: dispatches continuations
with exponential backoff, triggers the downstream aggregate refresh and wires
everything together in ``ImportOrchestrator``.
"""
