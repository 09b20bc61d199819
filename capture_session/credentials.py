"""
Operator credentials and secret verification.

Secrets are stored as Argon2id hashes. ``CredentialValidator.validate``
spends the same hashing work whether or not the username exists, and never
reports which of the two was wrong.
"""
import asyncio
import logging
import secrets
from typing import Optional, Union
from pathlib import Path

import orjson
from argon2 import PasswordHasher, Type, extract_parameters
from argon2.exceptions import InvalidHashError, VerificationError
from datamodel import BaseModel

logger = logging.getLogger("capture_session.auth")


class Credential(BaseModel):
    """Provisioned operator, looked up by ``username``."""
    username: str
    password_hash: str
    role: str = 'operator'
    allowed_sessions: int = 1


class CredentialRegistry:
    """Lookup of credentials by username.

    Only real Argon2 hashes are accepted, so a placeholder value left in a
    provisioning file fails at startup instead of silently locking an
    operator out.
    """

    def __init__(self, credentials: Optional[list[Credential]] = None):
        self._credentials: dict[str, Credential] = {}
        for credential in credentials or []:
            self.add(credential)

    def __len__(self) -> int:
        return len(self._credentials)

    def __contains__(self, username: object) -> bool:
        return username in self._credentials

    def add(self, credential: Credential) -> None:
        """Register a credential.

        Raises:
            ValueError: Duplicate username, a hash that is not Argon2, or a
                non-positive session allowance.
        """
        if credential.username in self._credentials:
            raise ValueError(f"Duplicate credential: {credential.username}")
        try:
            extract_parameters(credential.password_hash)
        except InvalidHashError:
            raise ValueError(
                f"Credential {credential.username} does not carry a valid "
                f"Argon2 hash"
            ) from None
        if credential.allowed_sessions < 1:
            raise ValueError(
                f"Credential {credential.username} must allow at least "
                f"one session"
            )
        self._credentials[credential.username] = credential

    def lookup(self, username: str) -> Optional[Credential]:
        return self._credentials.get(username)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "CredentialRegistry":
        """Load credentials from a JSON list of objects.

        Each object needs ``username`` and ``password_hash``; ``role`` and
        ``allowed_sessions`` are optional.
        """
        data = orjson.loads(Path(path).read_bytes())
        if not isinstance(data, list):
            raise ValueError(f"{path}: expected a JSON list of credentials")
        registry = cls([Credential(**item) for item in data])
        logger.info("Loaded %d credential(s) from %s", len(registry), path)
        return registry


class CredentialValidator:
    """Verifies presented secrets against the registry.

    Args:
        registry: Credential lookup.
        hasher: Argon2 hasher; tests pass cheaper parameters.
    """

    def __init__(
        self,
        registry: CredentialRegistry,
        hasher: Optional[PasswordHasher] = None
    ):
        self._registry = registry
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # verified against when the username is unknown
        self._decoy_hash = self._hasher.hash(secrets.token_urlsafe(32))

    @property
    def registry(self) -> CredentialRegistry:
        return self._registry

    def hash_secret(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def _verify(self, stored_hash: str, secret: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, secret)
        except (VerificationError, InvalidHashError):
            return False

    def check(self, username: str, secret: str) -> Optional[Credential]:
        """Blocking verification; see ``validate``."""
        credential = self._registry.lookup(username)
        if credential is None:
            self._verify(self._decoy_hash, secret)
            return None
        if self._verify(credential.password_hash, secret):
            return credential
        return None

    async def validate(self, username: str, secret: str) -> Optional[Credential]:
        """Return the credential when ``secret`` matches, else None.

        Hashing runs in a worker thread to keep the event loop responsive.
        """
        return await asyncio.to_thread(self.check, username, secret)
