from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import requests
from jose import JWTError, jwt

from ..core.config import (
    ALGORITHM,
    IDENTITY_PROVIDER,
    IDENTITY_TIMEOUT_SECONDS,
    JWT_AUDIENCE,
    SUPABASE_JWT_SECRET,
    SUPABASE_SERVICE_ROLE_KEY,
    SUPABASE_URL,
)
from ..core.errors import ConfigurationError

_REJECTED_STATUSES = {400, 401, 403, 404}


class IdentityRejected(Exception):
    """The provider answered, and the token does not name a user."""


class IdentityProviderError(Exception):
    """The provider could not be asked (outage, timeout, bad response)."""


@dataclass(frozen=True)
class CallerIdentity:
    user_id: str
    email: Optional[str] = None
    role: Optional[str] = None


def extract_bearer_token(header_value: Optional[str]) -> Optional[str]:
    raw = str(header_value or "")
    if not raw.startswith("Bearer "):
        return None
    token = raw[len("Bearer "):].strip()
    return token or None


class SupabaseIdentityProvider:
    def __init__(
        self,
        base_url: str,
        service_key: str,
        timeout: float = IDENTITY_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        if not base_url or not service_key:
            raise ConfigurationError("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY env vars")
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def verify(self, token: str) -> CallerIdentity:
        try:
            resp = self.session.get(
                f"{self.base_url}/auth/v1/user",
                headers={
                    "Authorization": f"Bearer {token}",
                    "apikey": self.service_key,
                },
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise IdentityProviderError("identity provider timed out") from exc
        except requests.RequestException as exc:
            raise IdentityProviderError(f"identity provider unreachable: {exc}") from exc

        if resp.status_code in _REJECTED_STATUSES:
            raise IdentityRejected(f"identity provider rejected token (status={resp.status_code})")
        if resp.status_code != 200:
            raise IdentityProviderError(f"identity provider returned status={resp.status_code}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise IdentityProviderError("identity provider returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise IdentityProviderError("identity provider returned unexpected payload")

        user_id = str(data.get("id") or "").strip()
        if not user_id:
            raise IdentityRejected("identity provider returned no user")
        return CallerIdentity(user_id=user_id, email=data.get("email"), role=data.get("role"))


class JwtIdentityProvider:
    """Verifies access tokens locally with the project's JWT secret."""

    def __init__(self, secret: str, algorithm: str = ALGORITHM, audience: Optional[str] = JWT_AUDIENCE):
        if not secret:
            raise ConfigurationError("Missing SUPABASE_JWT_SECRET env var")
        self.secret = secret
        self.algorithm = algorithm
        self.audience = audience or None

    def verify(self, token: str) -> CallerIdentity:
        options = {} if self.audience else {"verify_aud": False}
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                options=options,
            )
        except JWTError as exc:
            raise IdentityRejected(f"token verification failed: {exc}") from exc

        user_id = str(payload.get("sub") or "").strip()
        if not user_id:
            raise IdentityRejected("token has no subject")
        return CallerIdentity(user_id=user_id, email=payload.get("email"), role=payload.get("role"))


def build_identity_provider(kind: str = IDENTITY_PROVIDER):
    if kind == "jwt":
        return JwtIdentityProvider(SUPABASE_JWT_SECRET)
    return SupabaseIdentityProvider(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)
