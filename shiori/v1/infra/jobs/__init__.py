"""
Background jobs for bookmark enrichment.

This package provides a database-backed job queue with:
- Validated, all-or-nothing batch enqueueing
- Claim-once batches (SELECT FOR UPDATE SKIP LOCKED plus a conditional update)
- A bounded worker pool with job-level retry accounting
- A per-process lifecycle guard that keeps one drain loop active
"""
