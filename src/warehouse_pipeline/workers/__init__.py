"""Sync worker: envelope validation, pseudonymization and warehouse upsert."""
