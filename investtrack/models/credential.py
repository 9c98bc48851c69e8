"""OAuth credential models."""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class TokenState(Enum):
    """Lifecycle state of a stored OAuth credential."""
    NO_TOKEN = "NO_TOKEN"
    VALID = "VALID"
    NEAR_EXPIRY = "NEAR_EXPIRY"
    REFRESHING = "REFRESHING"
    NEEDS_REAUTH = "NEEDS_REAUTH"


@dataclass
class OAuthCredential:
    """Provider app credentials and the token pair for one linked account."""
    account_id: int
    user_id: int
    app_key: str
    app_secret: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    access_token_expires_at: Optional[datetime] = None
    account_hash: Optional[str] = None
    needs_reauth: bool = False
    last_refresh_error: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.account_id, self.user_id)

    def has_tokens(self) -> bool:
        return bool(self.access_token and self.refresh_token)


@dataclass(frozen=True)
class TokenPair:
    """Token endpoint response."""
    access_token: str
    refresh_token: Optional[str]
    expires_in: int


@dataclass
class TokenExpirationStatus:
    """Advisory expiry status for one credential."""
    account_id: int
    user_id: int
    state: TokenState
    access_token_expires_at: Optional[datetime]
    refresh_token_expires_at: Optional[datetime]
    days_until_reauth: Optional[float]
    needs_warning: bool
