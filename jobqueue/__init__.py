"""
Durable Job Queue

A PostgreSQL-backed job queue with exclusive reservation across concurrent
workers, bounded exponential-backoff retry, and per-type handler dispatch.
"""

__version__ = "1.0.0"
