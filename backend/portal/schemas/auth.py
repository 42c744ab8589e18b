from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class IdentityProfile(BaseModel):
    subject: str  # "sub" claim from the verified ID token
    email: str = ""
    name: str = ""
    picture: str = ""

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "IdentityProfile":
        def claim(key: str) -> str:
            value = claims.get(key)
            return "" if value is None else str(value)

        return cls(
            subject=claim("sub"),
            email=claim("email"),
            name=claim("name"),
            picture=claim("picture"),
        )


class TokenSet(BaseModel):
    """Token endpoint response for the authorization-code grant."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    token_type: str = "Bearer"
    id_token: str | None = None
    refresh_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None


class SessionData(BaseModel):
    """Everything the application keeps in a server-side session."""

    model_config = ConfigDict(validate_assignment=True, extra="ignore")

    oauth_state: str | None = None
    access_token: str | None = None
    profile: IdentityProfile | None = None
    user_id: UUID | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.profile is not None and bool(self.profile.subject)
