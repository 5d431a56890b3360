"""
Materializer - event log consumer

Folds events into the read store, skipping duplicates and parking events
that arrive ahead of their predecessors.
"""

from eventfold.materializer.materializer import (
    ApplyResult,
    Materializer,
    fold,
    follows,
    replay,
)

__all__ = ["ApplyResult", "Materializer", "fold", "follows", "replay"]
