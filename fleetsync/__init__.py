"""Reconciliation of audit logs and versioned repositories across a fleet."""

__version__ = "0.1.0"
