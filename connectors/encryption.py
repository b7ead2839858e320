"""
Token encryption — OAuth tokens and API keys are Fernet-encrypted at rest.

The key comes from ``config.token_encryption_key`` (env var:
``TOKEN_ENCRYPTION_KEY``).  Without a key the store falls back to plaintext
and logs a warning once.  Generate a key with::

    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

from __future__ import annotations

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from config.settings import config

logger = logging.getLogger(__name__)

_fernet: Optional[Fernet] = None
_initialised = False


def _cipher() -> Optional[Fernet]:
    """Lazy-initialise the Fernet cipher once."""
    global _fernet, _initialised

    if _initialised:
        return _fernet
    _initialised = True

    key = config.token_encryption_key
    if not key:
        logger.warning("TOKEN_ENCRYPTION_KEY not set — integration tokens are stored as plaintext")
        return None

    try:
        _fernet = Fernet(key.encode() if isinstance(key, str) else key)
        logger.info("Token encryption enabled (Fernet)")
    except ValueError as exc:
        logger.error("Invalid TOKEN_ENCRYPTION_KEY, storing tokens as plaintext: %s", exc)
        _fernet = None
    return _fernet


def reset_cipher() -> None:
    """Forget the cached cipher so the next call re-reads the key."""
    global _fernet, _initialised
    _fernet = None
    _initialised = False


def encrypt_token(plaintext: Optional[str]) -> Optional[str]:
    if plaintext is None:
        return None
    cipher = _cipher()
    if cipher is None:
        return plaintext
    return cipher.encrypt(plaintext.encode()).decode()


def decrypt_token(ciphertext: Optional[str]) -> Optional[str]:
    """
    Decrypt a stored token.

    Values written before encryption was enabled are not Fernet tokens and
    are returned unchanged.
    """
    if ciphertext is None:
        return None
    cipher = _cipher()
    if cipher is None:
        return ciphertext
    try:
        return cipher.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        return ciphertext


def is_encryption_enabled() -> bool:
    return _cipher() is not None
