"""Session memory for the orchestration pipeline."""

from .ledger import (
    CompletedPlanRecord,
    ConversationRecord,
    LedgerSession,
    LedgerStore,
    MemoryLedger,
    extract_goals,
)

__all__ = [
    "CompletedPlanRecord",
    "ConversationRecord",
    "LedgerSession",
    "LedgerStore",
    "MemoryLedger",
    "extract_goals",
]
