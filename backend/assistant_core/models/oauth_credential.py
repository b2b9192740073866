"""
OAuthCredential model - encrypted storage for third-party OAuth tokens.

SECURITY REQUIREMENTS:
- Tokens are encrypted at rest (see assistant_core.utils.encryption)
- No plaintext tokens outside process memory
- Token columns are NEVER logged

One row per (subject_id, provider). Created on first authorization,
updated in place on refresh, deleted on disconnect or revocation.
"""

import uuid

from sqlalchemy import Column, String, Text, UniqueConstraint

from assistant_core.db_base import Base
from assistant_core.models.base import TimestampMixin, UTCDateTime


class OAuthCredential(Base, TimestampMixin):
    """
    Stored OAuth credential for one subject and provider.

    Only CredentialStore reads or writes this table; it decrypts on the
    way out so callers never see ciphertext.
    """

    __tablename__ = "oauth_credentials"

    id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )

    subject_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Tenant/user that owns the credential"
    )
    provider = Column(
        String(50),
        nullable=False,
        comment="OAuth provider name (google, microsoft, ...)"
    )

    # Encrypted tokens - NEVER log these values
    access_token_encrypted = Column(
        Text,
        nullable=False,
        comment="Encrypted access token - NEVER log plaintext"
    )
    refresh_token_encrypted = Column(
        Text,
        nullable=True,
        comment="Encrypted refresh token - NEVER log plaintext"
    )

    # Token metadata (safe to log)
    token_type = Column(
        String(50),
        default="Bearer",
        comment="Token type (Bearer, etc.)"
    )
    expires_at = Column(
        UTCDateTime(),
        nullable=False,
        comment="When the access token expires"
    )
    scope = Column(
        Text,
        nullable=True,
        comment="Space-separated scopes granted by the provider"
    )
    last_refreshed_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="When tokens were last written by a grant or refresh"
    )

    __table_args__ = (
        UniqueConstraint("subject_id", "provider", name="uq_oauth_credentials_subject_provider"),
    )

    def __repr__(self) -> str:
        # Token columns intentionally omitted
        return (
            f"<OAuthCredential(id={self.id}, subject_id={self.subject_id}, "
            f"provider={self.provider}, expires_at={self.expires_at})>"
        )
