"""
auth/models.py -- Domain dataclass for the authenticated caller.

Pattern: Data class (pure data container, zero logic). Identities live in the
external identity provider; ProdReport only ever sees the verified claims
carried by a bearer token, never a stored user record.

Layer rule: no imports from api/, audit/, cache/, or security/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class Principal:
    """The verified caller behind a request.

    user_id is the identity provider's stable subject ID (the JWT "sub"
    claim). It is the same ID the cache namespaces user entries under and the
    security engine pins sessions to.
    """

    user_id: str
    email: str
    role: str  # "admin", "manager", "viewer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
