"""Storage layer - append-only dedup ledger and shared data models."""

from imgmirror.storage.ledger import DedupLedger
from imgmirror.storage.models import Candidate, LedgerState, PublishRequest, PublishResult

__all__ = ["DedupLedger", "Candidate", "LedgerState", "PublishRequest", "PublishResult"]
