"""Caller credential collaborator.

Authentication itself happens outside this package; sessions only need to
know whether a valid caller credential is available and what bearer token
to present to the edge functions.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class Credential:
    """Caller identity issued by the external identity provider."""

    access_token: str
    user_id: str | None = None
    expires_at: float | None = None  # Unix timestamp

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and time.time() >= self.expires_at

    @property
    def is_valid(self) -> bool:
        return bool(self.access_token) and not self.is_expired

    def authorization_header(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}


class CredentialProvider(ABC):
    """Supplies the current caller credential."""

    @abstractmethod
    async def get_credential(self) -> Credential | None:
        """Get the active credential.

        Returns:
            Credential, or None if the caller is not signed in
        """
        pass


class StaticCredentialProvider(CredentialProvider):
    """Credential provider holding a single fixed credential."""

    def __init__(self, credential: Credential | None = None) -> None:
        self._credential = credential

    @classmethod
    def from_token(cls, token: str | None) -> "StaticCredentialProvider":
        return cls(Credential(access_token=token) if token else None)

    def update(self, credential: Credential | None) -> None:
        """Replace the held credential (e.g. after a token refresh or sign-out)."""
        self._credential = credential

    async def get_credential(self) -> Credential | None:
        return self._credential
