import logging
import time
from typing import Any
from urllib.parse import urlencode

import httpx
from jose import JWTError, jwt
from pydantic import ValidationError

from portal.config import Settings
from portal.errors import OIDCError
from portal.schemas.auth import TokenSet

logger = logging.getLogger(__name__)

DISCOVERY_CACHE_TTL = 3600
JWKS_CACHE_TTL = 3600
ID_TOKEN_ALGORITHMS = ["RS256", "ES256"]


class OIDCClient:
    """
    Authorization-code client for a single OpenID Connect provider.

    Provider metadata and signing keys are discovered lazily and cached. Every
    call is awaited inside the request that needs it, so a cancelled request
    cancels its provider round trip. Nothing is retried.
    """

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.domain = settings.oidc_domain
        self.issuer_url = settings.issuer_url
        self.client_id = settings.oidc_client_id
        self.client_secret = settings.oidc_client_secret
        self.redirect_uri = settings.oidc_callback_url
        self.scopes = settings.oidc_scopes
        self.logout_path = settings.oidc_logout_path
        self.timeout = settings.oidc_timeout
        self._transport = transport

        self._metadata: dict[str, Any] | None = None
        self._metadata_time = 0.0
        self._jwks: dict[str, Any] | None = None
        self._jwks_time = 0.0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _get_json(self, url: str) -> dict[str, Any]:
        try:
            async with self._client() as client:
                resp = await client.get(url)
                resp.raise_for_status()
                return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Failed to fetch %s from OIDC provider: %s", url, e)
            raise OIDCError(f"Failed to contact OIDC provider: {e}") from e

    async def discover(self) -> dict[str, Any]:
        now = time.time()
        if self._metadata and (now - self._metadata_time) < DISCOVERY_CACHE_TTL:
            return self._metadata

        discovery_url = f"{self.issuer_url.rstrip('/')}/.well-known/openid-configuration"
        metadata = await self._get_json(discovery_url)
        if metadata.get("issuer") != self.issuer_url:
            raise OIDCError(
                f"Issuer mismatch: expected {self.issuer_url}, provider reported {metadata.get('issuer')}"
            )

        self._metadata = metadata
        self._metadata_time = now
        return metadata

    async def _endpoint(self, name: str) -> str:
        metadata = await self.discover()
        endpoint = metadata.get(name)
        if not endpoint:
            raise OIDCError(f"OIDC provider metadata has no {name}")
        return endpoint

    async def fetch_jwks(self) -> dict[str, Any]:
        now = time.time()
        if self._jwks and (now - self._jwks_time) < JWKS_CACHE_TTL:
            return self._jwks

        jwks = await self._get_json(await self._endpoint("jwks_uri"))
        self._jwks = jwks
        self._jwks_time = now
        return jwks

    async def authorization_url(self, state: str) -> str:
        endpoint = await self._endpoint("authorization_endpoint")
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
        }
        return f"{endpoint}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenSet:
        token_endpoint = await self._endpoint("token_endpoint")
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        try:
            async with self._client() as client:
                resp = await client.post(
                    token_endpoint, data=data, headers={"Accept": "application/json"}
                )
        except httpx.HTTPError as e:
            logger.error("Token exchange with %s failed: %s", token_endpoint, e)
            raise OIDCError(f"Failed to contact OIDC provider: {e}") from e

        if resp.is_error:
            logger.error(
                "Token endpoint %s returned %d: %s", token_endpoint, resp.status_code, resp.text
            )
            raise OIDCError(f"Token exchange failed with status {resp.status_code}")

        try:
            return TokenSet.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise OIDCError(f"Malformed token response: {e}") from None

    async def verify_id_token(self, token_set: TokenSet) -> dict[str, Any]:
        if not token_set.id_token:
            raise OIDCError("No id_token field in token response")

        jwks = await self.fetch_jwks()
        try:
            claims = jwt.decode(
                token_set.id_token,
                jwks,
                algorithms=ID_TOKEN_ALGORITHMS,
                audience=self.client_id,
                issuer=self.issuer_url,
                access_token=token_set.access_token,
                options={"verify_exp": True},
            )
        except JWTError as e:
            raise OIDCError(f"Invalid OIDC token: {e}") from None

        return claims

    def logout_url(self, return_to: str) -> str:
        params = urlencode({"returnTo": return_to, "client_id": self.client_id})
        return f"https://{self.domain}{self.logout_path}?{params}"
