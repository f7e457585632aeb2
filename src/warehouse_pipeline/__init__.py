"""Streams primary-store changes into the analytical warehouse.

Pseudonymizes identifying fields, delivers at-least-once with idempotent
upserts, dead-letters what cannot be processed, and enforces retention.
"""

__version__ = "1.0.0"
