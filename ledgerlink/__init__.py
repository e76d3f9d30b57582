"""
ledgerlink - Cross-Ledger Reconciliation Engine

Keeps transactions that live in several independently hosted budgets
(one shared household ledger plus one personal ledger per participant)
correlated through short tags embedded in transaction notes.

DESIGN PRINCIPLES:
1. The remote service is the source of truth; everything local is a cache
2. Derived state is recomputed, never persisted
3. Partial remote state is made visible, never silently repaired
4. Every destructive or multi-step action is confirmed by a human
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "ledgerlink maintainers"
