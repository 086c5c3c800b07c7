"""
EFD Kernel - shared infrastructure for the ledger import pipeline.

Provides:
- Declarative ORM base and engine/session helpers
- Structured JSON logging with bound job context
- Typed exception hierarchy with machine-readable codes
- Injectable clock
- Branch and participant registry
"""

__version__ = "0.1.0"
