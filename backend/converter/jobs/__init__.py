"""Bulk conversion jobs: models, store, orchestrator, status queries."""
