"""
Audit signature key management.

Every ledger record carries an HMAC over its integrity hash, made with the
server-held audit key, plus the version label of the key that produced it.
Rotation keeps old keys under their version so historic records still verify.
"""
import os
import secrets
from pathlib import Path
from typing import Dict, Optional

from auditchain.app.core.config import Settings, get_settings
from auditchain.app.core.logging import get_logger
from auditchain.app.services.hash_engine import sign, verify_signature

logger = get_logger(__name__)

# 64 random bytes, hex encoded
_MIN_KEY_LENGTH = 64


def generate_audit_key() -> str:
    """Generate a fresh audit signature key."""
    key = secrets.token_hex(64)
    logger.warning(f"Generated new audit signature key (length={len(key)}). Store it securely!")
    return key


def load_or_create_audit_key(settings: Settings) -> str:
    """
    Resolve the active audit key.

    1. AUDIT_SIGNATURE_KEY from the environment (KMS / secrets manager injection)
    2. Local key file (dev / single-node Docker volume)
    3. Generate a new key and persist it with mode 0600
    """
    if settings.audit_signature_key and settings.audit_signature_key.strip():
        return settings.audit_signature_key.strip()

    key_path = Path(settings.audit_key_file)
    if key_path.exists():
        key_from_file = key_path.read_text(encoding="utf-8").strip()
        if len(key_from_file) >= _MIN_KEY_LENGTH:
            return key_from_file
        logger.warning(f"Audit key file {key_path} looks invalid, regenerating")

    new_key = generate_audit_key()
    try:
        key_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(new_key)
        logger.info(f"Persisted new audit signature key to {key_path}")
    except OSError as e:
        # Records signed with this key stop verifying after a restart
        logger.error(
            f"Failed to persist audit key to {key_path}: {e}. "
            "Set AUDIT_SIGNATURE_KEY to keep signatures verifiable."
        )
    return new_key


class AuditKeyRing:
    """Active signing key plus retired keys, addressed by version label."""

    def __init__(self, active_version: str, keys: Dict[str, str]):
        if active_version not in keys:
            raise ValueError(f"Active key version '{active_version}' has no key material")
        self.active_version = active_version
        self._keys = dict(keys)

    @property
    def versions(self) -> list[str]:
        return sorted(self._keys)

    def get(self, version: str) -> Optional[str]:
        return self._keys.get(version)

    def sign(self, integrity_hash: str) -> tuple[str, str]:
        """Sign with the active key. Returns (signature, key_version)."""
        return sign(integrity_hash, self._keys[self.active_version]), self.active_version

    def verify(self, integrity_hash: str, signature: str, version: str) -> bool:
        key = self._keys.get(version)
        if key is None:
            return False
        return verify_signature(integrity_hash, signature, key)


def build_key_ring(settings: Optional[Settings] = None) -> AuditKeyRing:
    settings = settings or get_settings()
    keys = dict(settings.audit_retired_keys)
    keys[settings.audit_signature_key_version] = load_or_create_audit_key(settings)
    logger.info(
        f"Audit key ring ready (active={settings.audit_signature_key_version}, "
        f"versions={sorted(keys)})"
    )
    return AuditKeyRing(settings.audit_signature_key_version, keys)
