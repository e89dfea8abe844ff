from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional

DEFAULT_ROLE = "user"


class ProviderKind(str, enum.Enum):
    """Federated identity providers supported by the login view."""

    GOOGLE = "google"
    FACEBOOK = "facebook"

    @property
    def provider_id(self) -> str:
        # Provider ids as understood by the identity platform.
        return f"{self.value}.com"


@dataclass(frozen=True)
class Session:
    """Authenticated identity as issued by the identity provider."""

    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    photo_url: Optional[str] = None
    email_verified: bool = False
    created_at: Optional[datetime] = None
    last_sign_in_at: Optional[datetime] = None
    id_token: Optional[str] = field(default=None, repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class FederatedSignIn:
    """Result of a federated sign-in."""

    session: Session
    is_new_user: Optional[bool] = None  # None when the provider does not say


@dataclass(frozen=True)
class FederatedCredential:
    """Credential obtained from a consent flow, exchanged by the identity provider."""

    kind: ProviderKind
    id_token: Optional[str] = field(default=None, repr=False)
    access_token: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class Profile:
    """Application-owned enrichment of a session, stored as a document keyed by uid."""

    uid: str
    email: str = ""
    display_name: str = ""
    photo_url: str = ""
    role: str = DEFAULT_ROLE
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    def merged(self, partial: Dict[str, Any]) -> "Profile":
        """Return a copy with the fields of a partial update applied (uid is fixed)."""
        return replace(self, **{k: v for k, v in partial.items() if k != "uid"})
