"""
Database models for OAuth credentials.

The retry queue model lives in assistant_core.jobs.models.
"""

from assistant_core.models.base import TimestampMixin, UTCDateTime, utcnow
from assistant_core.models.oauth_credential import OAuthCredential

__all__ = [
    "TimestampMixin",
    "UTCDateTime",
    "utcnow",
    "OAuthCredential",
]
