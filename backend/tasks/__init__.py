# tasks/__init__.py
# ============================================================================
# ORDER ENGINE — BACKGROUND TASKS
# ============================================================================

from tasks.reconciliation import reconcile_once, reconciliation_loop

__all__ = [
    "reconcile_once",
    "reconciliation_loop",
]
