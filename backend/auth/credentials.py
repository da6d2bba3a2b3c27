"""
Signed agent credentials

An agent receives a credential when it registers and presents it on every
WebSocket connect. The credential is the agent ID signed with itsdangerous
(HMAC over the payload and issuance time), so the server can verify it
without a database lookup.

SECURITY:
- Signing secret persisted under the data directory (or CCSERVER_SECRET_KEY)
- Salted serializer so credentials can't be replayed as other signed values
- Optional maximum age (CCSERVER_AGENT_CREDENTIAL_MAX_AGE)
"""

import json
import logging
import os
import secrets
from datetime import datetime, timezone
from typing import Optional

from itsdangerous import URLSafeTimedSerializer, SignatureExpired, BadData

logger = logging.getLogger(__name__)

CREDENTIAL_SALT = "ccserver-agent-credential"


def _load_or_generate_secret(secret_file: str) -> str:
    """
    Load existing signing secret or generate a new one.

    The secret is persisted so issued credentials survive server restarts.
    """
    if os.path.exists(secret_file):
        try:
            with open(secret_file, 'r') as f:
                data = json.loads(f.read().strip())
            secret = data.get('secret')
            if secret and len(secret) >= 32:
                logger.info("Loaded existing agent credential secret")
                return secret
            logger.warning(f"Invalid secret in {secret_file}, regenerating")
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load secret from {secret_file}: {e}")

    secret = secrets.token_urlsafe(32)
    secret_data = {
        'secret': secret,
        'created_at': datetime.now(timezone.utc).isoformat(),
    }

    try:
        os.makedirs(os.path.dirname(secret_file) or '.', exist_ok=True)

        # Restrictive umask before file creation
        old_umask = os.umask(0o077)
        try:
            with open(secret_file, 'w') as f:
                json.dump(secret_data, f, indent=2)
            os.chmod(secret_file, 0o600)
        finally:
            os.umask(old_umask)

        logger.info(f"Generated new agent credential secret and saved to {secret_file}")
    except OSError as e:
        logger.error(f"Failed to save secret to {secret_file}: {e}")
        logger.warning("Using ephemeral secret (agents must re-register after restart)")

    return secret


class CredentialSigner:
    """Issues and verifies agent credentials"""

    def __init__(self, secret_key: str, max_age_seconds: int = 0):
        """
        Args:
            secret_key: HMAC signing secret
            max_age_seconds: Reject credentials older than this; 0 disables expiry
        """
        self._serializer = URLSafeTimedSerializer(secret_key, salt=CREDENTIAL_SALT)
        self.max_age_seconds = max_age_seconds

    def issue(self, agent_id: str) -> str:
        return self._serializer.dumps({"agent_id": agent_id})

    def verify(self, credential: str) -> Optional[str]:
        """
        Verify a credential.

        Returns:
            The agent ID the credential was issued to, or None if invalid
        """
        if not credential:
            return None

        try:
            payload = self._serializer.loads(
                credential,
                max_age=self.max_age_seconds or None
            )
        except SignatureExpired:
            logger.warning("Agent credential expired")
            return None
        except BadData:
            logger.warning("Invalid agent credential signature (possible tampering)")
            return None

        agent_id = payload.get("agent_id") if isinstance(payload, dict) else None
        if not isinstance(agent_id, str) or not agent_id:
            logger.warning("Agent credential has no agent_id")
            return None
        return agent_id


_credential_signer: Optional[CredentialSigner] = None


def get_credential_signer() -> CredentialSigner:
    """Get the process-wide signer (CCSERVER_SECRET_KEY overrides the persisted secret)"""
    global _credential_signer
    if _credential_signer is None:
        from config.paths import SECRET_FILE
        from config.settings import AppConfig

        secret = os.getenv('CCSERVER_SECRET_KEY') or _load_or_generate_secret(SECRET_FILE)
        _credential_signer = CredentialSigner(secret, AppConfig.AGENT_CREDENTIAL_MAX_AGE)
    return _credential_signer


def issue_agent_credential(agent_id: str) -> str:
    return get_credential_signer().issue(agent_id)


def verify_agent_credential(credential: str) -> Optional[str]:
    return get_credential_signer().verify(credential)
