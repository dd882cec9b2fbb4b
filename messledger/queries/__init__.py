"""Scope loading package."""

from messledger.queries.scope import LedgerSnapshot, ScopeLoader

__all__ = ["LedgerSnapshot", "ScopeLoader"]
