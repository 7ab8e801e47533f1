"""jobq - Reliable Background Job Processing

Durable job queue with leases, retries, deduplication, rate limiting,
dead-lettering and time-based scheduling.
"""

__version__ = "0.1.0"
