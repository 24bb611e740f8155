"""Symmetric encryption for provider credentials and OAuth state.

WHAT:
    Fernet wrapper used to encrypt access/refresh tokens at rest and to seal
    OAuth state payloads.

WHY:
    - Provider credentials never land in the database or logs as plaintext
    - Fernet tokens are URL-safe base64, so sealed state can ride in a query string

REFERENCES:
    - adsync/services/credential_store.py (token persistence)
    - adsync/services/oauth_flow.py (state tokens)
"""

import base64
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .errors import ConfigurationMissing

logger = logging.getLogger(__name__)


class TokenCipher:
    """Fernet cipher bound to one key.

    Built from settings at startup and passed to the services that need it.
    """

    def __init__(self, key: Optional[str]):
        if not key:
            raise ConfigurationMissing(
                "TOKEN_ENCRYPTION_KEY is not set. Generate a 32-byte Fernet key and export it "
                "or add it to .env."
            )
        try:
            # Validate key length by decoding without storing plaintext material.
            base64.urlsafe_b64decode(key.encode("utf-8"))
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as exc:
            raise ConfigurationMissing(
                "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
                "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            ) from exc

    def encrypt_secret(self, plaintext: str, *, context: str) -> str:
        """Encrypt a secret before persisting.

        Args:
            plaintext: Raw secret to encrypt (e.g., an access token).
            context:   Friendly label for logs (provider/account).

        Returns:
            URL-safe base64 ciphertext suitable for DB storage.
        """
        if not plaintext:
            raise ValueError("Cannot encrypt empty secret.")

        ciphertext = self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")
        logger.debug("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
        return ciphertext

    def decrypt_secret(self, ciphertext: str, *, context: str) -> str:
        """Reverse `encrypt_secret`.

        Raises:
            ValueError: If the value cannot be decrypted with this key.
        """
        if not ciphertext:
            raise ValueError("Cannot decrypt empty secret.")

        try:
            plaintext = self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
            logger.debug("[TOKEN_DECRYPT] Secret decrypted for %s (length=%d)", context, len(plaintext))
            return plaintext
        except InvalidToken as exc:
            logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
            raise ValueError("Unable to decrypt stored secret.") from exc
