"""
Core modules for Ingest Guard.

This package contains quota accounting, permission checks, source
locking, result caching, the ingestion orchestrator and progress
estimation.
"""
