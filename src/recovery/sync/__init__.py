"""Sync infrastructure for the Vigor recovery engine.

Modules:
    state        — Persisted sync state (backfill flag, watermark, failures)
    orchestrator — Backfill / incremental sync, upsert, and rescore
    scheduler    — Skip/retry policy and the periodic background runner
"""
