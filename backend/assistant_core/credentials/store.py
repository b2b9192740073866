"""
Credential storage service for encrypted OAuth credentials.

SECURITY REQUIREMENTS:
- Tokens are encrypted at rest before storage
- No plaintext tokens outside process memory
- Reads decrypt transparently; ciphertext never leaves this module

One credential per (subject_id, provider). save() is an upsert: access
token, token type, scope and expiry are always overwritten, while a
previously stored refresh token survives a grant that omits one
(providers often only issue it on the first consent).

Usage:
    store = CredentialStore(db_session, cipher)

    await store.save("user-123", "google", TokenGrant(
        access_token="ya29.xxx",
        refresh_token="1//xxx",
        expires_in=3599,
        scope="openid email",
    ))

    credential = await store.load("user-123", "google")
    await store.delete("user-123", "google")
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from assistant_core.credentials.redaction import AuditEventType, CredentialAuditLogger
from assistant_core.models.oauth_credential import OAuthCredential
from assistant_core.utils.encryption import SecretCipher

logger = logging.getLogger(__name__)

# Used when a grant does not say how long the access token lives
DEFAULT_EXPIRES_IN_SECONDS = 3600


@dataclass
class TokenGrant:
    """
    Tokens returned by an authorization or refresh grant.

    SECURITY: Holds plaintext tokens. Never log instances.
    """
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    token_type: str = "Bearer"

    def __repr__(self) -> str:
        return (
            f"TokenGrant(access_token=[REDACTED], "
            f"refresh_token={'[REDACTED]' if self.refresh_token else None}, "
            f"expires_in={self.expires_in}, scope={self.scope!r})"
        )


@dataclass
class Credential:
    """
    Decrypted view of a stored credential.

    SECURITY: Holds plaintext tokens. Never log instances.
    """
    subject_id: str
    provider: str
    access_token: str
    refresh_token: Optional[str]
    token_type: Optional[str]
    expires_at: datetime
    scope: Optional[str]
    created_at: Optional[datetime]
    last_refreshed_at: Optional[datetime]

    def __repr__(self) -> str:
        return (
            f"Credential(subject_id={self.subject_id!r}, provider={self.provider!r}, "
            f"expires_at={self.expires_at!r}, has_refresh_token={self.refresh_token is not None})"
        )


@dataclass
class TokenInfo:
    """
    Credential metadata safe for API responses and logging.

    SECURITY: Does NOT include token values.
    """
    subject_id: str
    provider: str
    expires_at: datetime
    scope: Optional[str]
    created_at: Optional[datetime]
    last_refreshed_at: Optional[datetime]
    is_expired: bool

    def to_dict(self) -> dict:
        return {
            "subject_id": self.subject_id,
            "provider": self.provider,
            "expires_at": self.expires_at.isoformat(),
            "scope": self.scope,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_refreshed_at": (
                self.last_refreshed_at.isoformat() if self.last_refreshed_at else None
            ),
            "is_expired": self.is_expired,
        }


class CredentialStore:
    """
    Keyed get/upsert/delete over (subject_id, provider) credentials.

    Tokens are encrypted before storage and decrypted only on load.
    Writes should go through TokenLifecycleManager, which owns refresh
    serialization.
    """

    def __init__(self, db_session: Session, cipher: SecretCipher):
        self.db = db_session
        self.cipher = cipher
        self.audit = CredentialAuditLogger()

    async def save(
        self,
        subject_id: str,
        provider: str,
        tokens: TokenGrant,
        update_only: bool = False,
    ) -> Optional[Credential]:
        """
        Encrypt and upsert credentials for (subject_id, provider).

        With update_only=True an absent row is left absent and None is
        returned; refreshes use this so they never recreate a credential.

        Raises:
            ValueError: If subject_id, provider or the access token is empty
        """
        if not subject_id or not provider:
            raise ValueError("subject_id and provider are required")
        if not tokens.access_token:
            raise ValueError("Cannot store an empty access token")

        now = datetime.now(timezone.utc)
        expires_in = tokens.expires_in or DEFAULT_EXPIRES_IN_SECONDS
        expires_at = now + timedelta(seconds=expires_in)

        access_token_encrypted = self.cipher.encrypt(tokens.access_token)
        refresh_token_encrypted = self.cipher.encrypt(tokens.refresh_token)

        row = self._get_row(subject_id, provider)
        action = "updated"
        if row is None:
            if update_only:
                return None
            action = "created"
            row = OAuthCredential(subject_id=subject_id, provider=provider)
            self.db.add(row)

        row.access_token_encrypted = access_token_encrypted
        # Keep the stored refresh token when the provider did not reissue one
        if refresh_token_encrypted:
            row.refresh_token_encrypted = refresh_token_encrypted
        row.token_type = tokens.token_type or "Bearer"
        row.expires_at = expires_at
        row.scope = tokens.scope
        row.last_refreshed_at = now

        self.db.commit()

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_STORED,
            subject_id=subject_id,
            provider=provider,
            metadata={"action": action, "expires_at": expires_at.isoformat()},
        )

        logger.info(
            "Credential stored",
            extra={
                "subject_id": subject_id,
                "provider": provider,
                "action": action,
                "expires_at": expires_at.isoformat(),
            }
        )

        return self._to_credential(row)

    async def load(self, subject_id: str, provider: str) -> Optional[Credential]:
        """
        Load and decrypt the credential for (subject_id, provider).

        Returns:
            Credential, or None if the subject never connected

        Raises:
            DecryptionError: If stored ciphertext is corrupted or was tampered with
        """
        row = self._get_row(subject_id, provider)
        if row is None:
            return None
        return self._to_credential(row)

    async def delete(self, subject_id: str, provider: str) -> bool:
        """
        Delete the credential for (subject_id, provider).

        Returns:
            True if a row was removed
        """
        row = self._get_row(subject_id, provider)
        if row is None:
            return False

        self.db.delete(row)
        self.db.commit()

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_DELETED,
            subject_id=subject_id,
            provider=provider,
        )
        logger.info(
            "Local credential deleted",
            extra={"subject_id": subject_id, "provider": provider}
        )
        return True

    async def get_token_info(self, subject_id: str, provider: str) -> Optional[TokenInfo]:
        """
        Get credential metadata without decrypting anything.

        Returns:
            TokenInfo, or None if the subject never connected
        """
        row = self._get_row(subject_id, provider)
        if row is None:
            return None

        return TokenInfo(
            subject_id=row.subject_id,
            provider=row.provider,
            expires_at=row.expires_at,
            scope=row.scope,
            created_at=row.created_at,
            last_refreshed_at=row.last_refreshed_at,
            is_expired=datetime.now(timezone.utc) >= row.expires_at,
        )

    def _get_row(self, subject_id: str, provider: str) -> Optional[OAuthCredential]:
        return self.db.query(OAuthCredential).filter(
            OAuthCredential.subject_id == subject_id,
            OAuthCredential.provider == provider,
        ).first()

    def _to_credential(self, row: OAuthCredential) -> Credential:
        return Credential(
            subject_id=row.subject_id,
            provider=row.provider,
            access_token=self.cipher.decrypt(row.access_token_encrypted),
            refresh_token=self.cipher.decrypt(row.refresh_token_encrypted),
            token_type=row.token_type,
            expires_at=row.expires_at,
            scope=row.scope,
            created_at=row.created_at,
            last_refreshed_at=row.last_refreshed_at,
        )
