"""
Vault Crypto Core — Field key derivation and authenticated encryption.

Every captured field (phone number, safety code, delivery recipient) is
encrypted on its own with a fresh random nonce:

    HKDF(encryption_key, "capture-field-v1") → AEAD → [nonce 12B][tag 16B][ciphertext]

The associated data binds a ciphertext to its capture id and field name, so an
envelope copied into another session or another column fails authentication.

Security Note:
    Never log plaintext or ciphertext values.
    Nonces are random 96-bit; collision probability negligible under normal usage.
"""
import os
import logging
from typing import NamedTuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from ..exceptions import IntegrityFailure

logger = logging.getLogger("capture_session.vault")

NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16
KEY_LENGTH = 32  # AES-256
FIELD_CONTEXT = "capture-field-v1"

_CIPHERS = {
    "aesgcm": AESGCM,
    "chacha20": ChaCha20Poly1305,
}


class Envelope(NamedTuple):
    """A stored ciphertext: nonce, integrity tag and encrypted payload."""

    nonce: bytes
    tag: bytes
    ciphertext: bytes

    def to_bytes(self) -> bytes:
        return self.nonce + self.tag + self.ciphertext

    @classmethod
    def from_bytes(cls, blob: bytes) -> "Envelope":
        """Split a stored blob into its parts.

        Raises:
            IntegrityFailure: If the blob is too short to hold nonce and tag.
        """
        _min = NONCE_SIZE + TAG_SIZE
        if not isinstance(blob, (bytes, bytearray, memoryview)) or len(blob) < _min:
            raise IntegrityFailure(
                details={"reason": "malformed envelope"}
            )
        blob = bytes(blob)
        return cls(
            nonce=blob[:NONCE_SIZE],
            tag=blob[NONCE_SIZE:NONCE_SIZE + TAG_SIZE],
            ciphertext=blob[NONCE_SIZE + TAG_SIZE:],
        )


def derive_key(seed: bytes, context: str) -> bytes:
    """Derive a 32-byte encryption key using HKDF-SHA256.

    Args:
        seed: Input key material (the process-wide encryption key).
        context: Context string for domain separation.

    Returns:
        32-byte derived key.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,  # deterministic: one field key per process key
        info=context.encode("utf-8"),
    )
    return hkdf.derive(seed)


def field_aad(capture_id: str, field: str) -> bytes:
    return f"{capture_id}:{field}".encode("utf-8")


class FieldCipher:
    """Authenticated encryption for individual captured fields.

    Holds the derived field key; read-only after construction, so a single
    instance is safe to share between concurrent tasks.
    """

    def __init__(self, encryption_key: bytes, backend: str = "aesgcm"):
        if len(encryption_key) != KEY_LENGTH:
            raise ValueError(
                f"encryption key must be {KEY_LENGTH} bytes, "
                f"got {len(encryption_key)}"
            )
        try:
            cipher_cls = _CIPHERS[backend]
        except KeyError:
            raise ValueError(f"Unsupported cipher backend: {backend}") from None
        self._aead = cipher_cls(derive_key(encryption_key, FIELD_CONTEXT))
        self.backend = backend

    def encrypt(self, plaintext: str, aad: bytes) -> bytes:
        """Encrypt a text value with a fresh nonce.

        Args:
            plaintext: Value to protect.
            aad: Associated data (see ``field_aad``).

        Returns:
            Envelope bytes ``[nonce][tag][ciphertext]``.
        """
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), aad)
        # cryptography appends the tag to the ciphertext
        return Envelope(
            nonce=nonce,
            tag=sealed[-TAG_SIZE:],
            ciphertext=sealed[:-TAG_SIZE],
        ).to_bytes()

    def decrypt(self, blob: bytes, aad: bytes) -> str:
        """Verify and decrypt an envelope.

        Raises:
            IntegrityFailure: On a malformed envelope, a tag mismatch, or a
                payload that is not valid UTF-8.
        """
        envelope = Envelope.from_bytes(blob)
        try:
            plaintext = self._aead.decrypt(
                envelope.nonce, envelope.ciphertext + envelope.tag, aad
            )
        except InvalidTag:
            raise IntegrityFailure(
                details={"reason": "authentication tag mismatch"}
            ) from None
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise IntegrityFailure(
                details={"reason": "payload is not valid text"}
            ) from None
