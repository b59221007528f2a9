"""
Shared job queue for the role_sync, seat_audit and signal_mirror families.

- One table, deduplicated per family scope while a job is pending or processing
- Conditional-update claims with opaque claim tokens
- Bounded retries with capped exponential backoff
- A readiness feed that lets workers sleep until work is due
"""
