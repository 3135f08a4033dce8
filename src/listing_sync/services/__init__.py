"""Synchronization services: token lifecycle, catalog, orders, metrics and reconciliation."""
