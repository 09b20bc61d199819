"""Capture Vault — Encrypted, short-lived storage of two-factor captures.

Security Note (Threat Model):
    Captured phone numbers and safety codes are decrypted in process memory
    only while an authorized read or send is in progress. A memory dump of
    the process during that window, or of the process-wide key, exposes them.
    Keeping the key in a hardware module is not supported.
"""

from .store import CaptureStore
from .sweeper import CaptureSweeper
from .crypto import FieldCipher, Envelope
from .backends import CaptureBackend, MemoryCaptureBackend, PostgresCaptureBackend
from .config import VaultConfig, load_encryption_key, generate_encryption_key
from .models import CaptureSession, CapturedRecord, CapturedEntry, DeliveryLogEntry, RecordStatus

__all__ = [
    "CaptureStore",
    "CaptureSweeper",
    "FieldCipher",
    "Envelope",
    "CaptureBackend",
    "MemoryCaptureBackend",
    "PostgresCaptureBackend",
    "VaultConfig",
    "load_encryption_key",
    "generate_encryption_key",
    "CaptureSession",
    "CapturedRecord",
    "CapturedEntry",
    "DeliveryLogEntry",
    "RecordStatus",
]
