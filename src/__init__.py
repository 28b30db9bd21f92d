"""
trending-pipeline source package

Trending refresh and distributed job coordination: platform adapters, the
Redis-backed trending cache and locks, durable job queues with workers, the
repeatable-job scheduler and partition maintenance.
"""

__version__ = "0.1.0"
