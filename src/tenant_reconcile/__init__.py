"""Reconciliation of user attributes between two Microsoft 365 tenants.

This package exposes helpers for configuration loading, token lifecycle,
directory reads and writes, matching, diffing, operator resolution,
checkpointing, and reporting.
"""
