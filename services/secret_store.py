"""
Secret storage for server passwords kept on orders

PlaintextSecretStore keeps the historical behaviour. FernetSecretStore encrypts at rest
and is selected automatically when ORDER_PASSWORD_KEY is set.
"""

import os
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

FERNET_PREFIX = 'fernet:'


class PlaintextSecretStore:
    """Stores values unchanged"""

    name = 'plaintext'

    def seal(self, value: Optional[str]) -> Optional[str]:
        return value

    def reveal(self, stored: Optional[str]) -> Optional[str]:
        return stored


class FernetSecretStore:
    """Symmetric encryption at rest with a Fernet key"""

    name = 'fernet'

    def __init__(self, key: str):
        self.cipher = Fernet(key.encode() if isinstance(key, str) else key)

    def seal(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return FERNET_PREFIX + self.cipher.encrypt(value.encode()).decode()

    def reveal(self, stored: Optional[str]) -> Optional[str]:
        if stored is None:
            return None
        # Rows written before encryption was enabled are still plaintext
        if not stored.startswith(FERNET_PREFIX):
            return stored
        try:
            return self.cipher.decrypt(stored[len(FERNET_PREFIX):].encode()).decode()
        except InvalidToken:
            logger.error("❌ SECRET STORE: Unable to decrypt stored password (wrong ORDER_PASSWORD_KEY?)")
            raise


# Global instance
_secret_store = None

def get_secret_store():
    """Secret store chosen from environment"""
    global _secret_store
    if _secret_store is None:
        key = os.getenv('ORDER_PASSWORD_KEY')
        if key:
            _secret_store = FernetSecretStore(key)
            logger.info("🔐 SECRET STORE: Order passwords encrypted at rest (Fernet)")
        else:
            _secret_store = PlaintextSecretStore()
            logger.warning("⚠️ SECRET STORE: ORDER_PASSWORD_KEY not set - order passwords stored in plaintext")
    return _secret_store
