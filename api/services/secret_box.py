"""
Encryption at rest for connection secrets.

Shared secrets are stored Fernet-encrypted. The key comes from
KINSYNC_SECRET_KEY or, when unset, from data/secret.key which is
generated on first use.
"""
import logging
import os
import threading
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from config.settings import settings

logger = logging.getLogger(__name__)


class SecretBox:
    """Encrypts and decrypts shared secrets."""

    def __init__(self, key: Optional[str] = None, key_path: Optional[Path] = None):
        self._fernet = Fernet(key.encode() if key else self._load_or_create_key(key_path))

    @staticmethod
    def _load_or_create_key(key_path: Optional[Path]) -> bytes:
        path = Path(key_path or settings.secret_key_path)
        if path.exists():
            return path.read_bytes().strip()

        path.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(key)
        logger.info(f"Generated new secret encryption key at {path}")
        return key

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        """
        Decrypt a stored secret.

        Raises:
            ValueError: token was not produced with this key
        """
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise ValueError("Stored secret cannot be decrypted with the configured key") from e


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_secret_box: Optional[SecretBox] = None
_secret_box_lock = threading.Lock()


def get_secret_box() -> SecretBox:
    """Get or create the singleton SecretBox."""
    global _secret_box
    if _secret_box is None:
        with _secret_box_lock:
            if _secret_box is None:
                _secret_box = SecretBox(key=settings.secret_encryption_key or None)
    return _secret_box


def reset_secret_box() -> None:
    """Reset the singleton (for testing)."""
    global _secret_box
    _secret_box = None
