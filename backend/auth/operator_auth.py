"""
Operator API key authentication

Every operator endpoint (listing agents, submitting commands, reading history,
issuing registration tokens) requires "Authorization: Bearer <key>".

SECURITY FEATURES:
- SHA256 key hashing (plaintext kept only in the env var or the key file)
- Constant-time comparison
- Key generated on first start when CCSERVER_OPERATOR_API_KEY is not set
"""

import hashlib
import hmac
import logging
import os
import secrets
from typing import Optional

from fastapi import Header, HTTPException, status

logger = logging.getLogger(__name__)

KEY_PREFIX = "ccop_"


def generate_operator_key() -> str:
    """Generate an operator key with 256 bits of entropy"""
    return f"{KEY_PREFIX}{secrets.token_urlsafe(32)}"


def hash_key(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()


def _load_or_generate_key(key_file: str) -> str:
    """Load the operator key from disk, generating and saving one on first start"""
    if os.path.exists(key_file):
        try:
            with open(key_file, 'r') as f:
                key = f.read().strip()
            if key.startswith(KEY_PREFIX):
                return key
            logger.warning(f"Invalid operator key in {key_file}, regenerating")
        except OSError as e:
            logger.error(f"Failed to read operator key from {key_file}: {e}")

    key = generate_operator_key()
    try:
        os.makedirs(os.path.dirname(key_file) or '.', exist_ok=True)
        old_umask = os.umask(0o077)
        try:
            with open(key_file, 'w') as f:
                f.write(key + "\n")
            os.chmod(key_file, 0o600)
        finally:
            os.umask(old_umask)
        logger.warning(f"Generated operator API key and saved to {key_file}")
    except OSError as e:
        logger.error(f"Failed to save operator key to {key_file}: {e}")

    return key


class OperatorAuthenticator:
    """Validates operator bearer keys against a single configured key"""

    def __init__(self, operator_key: str):
        self._key_hash = hash_key(operator_key)

    def validate(self, presented: Optional[str]) -> bool:
        if not presented or not presented.startswith(KEY_PREFIX):
            return False
        return hmac.compare_digest(hash_key(presented), self._key_hash)


_authenticator: Optional[OperatorAuthenticator] = None


def get_operator_authenticator() -> OperatorAuthenticator:
    global _authenticator
    if _authenticator is None:
        from config.paths import OPERATOR_KEY_FILE

        key = os.getenv('CCSERVER_OPERATOR_API_KEY') or _load_or_generate_key(OPERATOR_KEY_FILE)
        _authenticator = OperatorAuthenticator(key)
    return _authenticator


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an Authorization header ("Bearer <token>" or a bare token)"""
    if not authorization:
        return None
    scheme, _, value = authorization.strip().partition(" ")
    if value and scheme.lower() == "bearer":
        return value.strip()
    return authorization.strip()


async def require_operator(authorization: Optional[str] = Header(None)) -> None:
    """FastAPI dependency rejecting requests without a valid operator key"""
    if not get_operator_authenticator().validate(extract_bearer(authorization)):
        logger.warning("Rejected operator request with missing or invalid API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing operator API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
