"""
Caller Identity Module

The ledger trusts an identity supplied by an external auth provider and
records it on the entries it writes. Token issuance and validation live
outside this package; ``StaticIdentityProvider`` covers tests and local use.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional


class AuthenticationError(Exception):
    """Token could not be resolved to a caller"""
    pass


@dataclass(frozen=True)
class CallerIdentity:
    """Validated caller of a ledger operation"""
    user_id: str
    email: Optional[str] = None
    roles: FrozenSet[str] = field(default_factory=frozenset)

    def has_role(self, role: str) -> bool:
        return role in self.roles


class IdentityProvider(ABC):
    """Resolves a bearer token into a caller identity"""

    @abstractmethod
    def authenticate(self, token: str) -> CallerIdentity:
        """
        Raises:
            AuthenticationError: If the token is unknown or invalid
        """
        pass


class StaticIdentityProvider(IdentityProvider):
    """Fixed token -> identity table"""

    def __init__(self, identities: Optional[Dict[str, CallerIdentity]] = None):
        self._identities: Dict[str, CallerIdentity] = dict(identities or {})

    def register(self, token: str, identity: CallerIdentity) -> None:
        self._identities[token] = identity

    def authenticate(self, token: str) -> CallerIdentity:
        if token and token.startswith("Bearer "):
            token = token[len("Bearer "):]
        identity = self._identities.get(token)
        if identity is None:
            raise AuthenticationError("Invalid or unknown token")
        return identity
