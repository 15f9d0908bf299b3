"""
Tenant Job Orchestrator

Background job orchestration for a multi-tenant platform: named queues over
a shared broker, bounded-concurrency workers, durable job records,
per-tenant deduplication, distributed locks and graceful shutdown.
"""

__version__ = "1.0.0"
