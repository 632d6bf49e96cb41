"""Sync pipeline: reconciliation, propagation, run logging and orchestration."""
