"""Envelope signing and operator authorization.

Envelopes on the events topic carry an ``x-envelope-signature`` header: hex
HMAC-SHA256 of the message value under the shared signing key. The sync
worker rejects unsigned or mis-signed envelopes as authorization failures.

Privileged operations (dead-letter recovery, discard) take a Principal and
require the ``admin`` role.
"""

import hashlib
import hmac
from dataclasses import dataclass, field

from core.errors.exceptions import AuthorizationError

SIGNATURE_HEADER = "x-envelope-signature"
ADMIN_ROLE = "admin"


class EnvelopeSigner:
    def __init__(self, signing_key: str):
        if not signing_key:
            raise ValueError("signing_key must not be empty")
        self._key = signing_key.encode("utf-8")

    def sign(self, value: bytes) -> str:
        return hmac.new(self._key, value, hashlib.sha256).hexdigest()

    def verify(self, value: bytes, signature: bytes | str | None) -> None:
        """Raise AuthorizationError unless ``signature`` matches ``value``."""
        if signature is None:
            raise AuthorizationError("Envelope is not signed")
        if isinstance(signature, bytes):
            signature = signature.decode("utf-8", errors="replace")
        if not hmac.compare_digest(self.sign(value), signature):
            raise AuthorizationError("Envelope signature mismatch")


@dataclass(frozen=True)
class Principal:
    """Identity of the caller of a privileged operation."""

    subject: str
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


def require_admin(principal: Principal | None, operation: str) -> Principal:
    if principal is None or not principal.is_admin:
        raise AuthorizationError(
            f"Administrative privilege required for {operation}",
            context={"operation": operation, "principal": getattr(principal, "subject", None)},
        )
    return principal
