"""Keyed hashing of subject identifiers.

The hash is HMAC-SHA256 under a secret salt, hex encoded. It is stable for a
fixed salt, so hashed subjects can be joined across tables and runs, and it
cannot be reversed or brute-forced without the salt.
"""

import hashlib
import hmac


class Pseudonymizer:
    def __init__(self, salt: str):
        if not salt:
            raise ValueError("Pseudonymization salt must not be empty")
        self._key = salt.encode("utf-8")

    def hash(self, raw_value: str) -> str:
        return hmac.new(self._key, raw_value.encode("utf-8"), hashlib.sha256).hexdigest()

    def hash_optional(self, raw_value: str | None) -> str | None:
        return self.hash(raw_value) if raw_value else None
