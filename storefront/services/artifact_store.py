from __future__ import annotations

from typing import Callable, Optional
from urllib.parse import quote
import hashlib
import hmac
import time

import requests

from ..core.config import (
    ARTIFACT_BASE_URL,
    ARTIFACT_BUCKET,
    ARTIFACT_SIGNER,
    ARTIFACT_SIGNING_SECRET,
    STORAGE_SIGN_TIMEOUT_SECONDS,
    SUPABASE_SERVICE_ROLE_KEY,
    SUPABASE_URL,
)
from ..core.errors import ConfigurationError


class ArtifactStoreError(Exception):
    pass


def _encode_path(path_value: str) -> str:
    segments = [segment.strip() for segment in str(path_value or "").replace("\\", "/").split("/")]
    return "/".join(quote(segment, safe="") for segment in segments if segment)


class SupabaseStorageSigner:
    """Asks the hosted object store to sign a private object path."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        bucket: str = ARTIFACT_BUCKET,
        timeout: float = STORAGE_SIGN_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        if not base_url or not service_key:
            raise ConfigurationError("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY env vars")
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.bucket = bucket
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def storage_url(self) -> str:
        return f"{self.base_url}/storage/v1"

    def create_signed_url(self, path: str, ttl_seconds: int) -> str:
        object_path = _encode_path(path)
        if not object_path:
            raise ArtifactStoreError("empty storage path")
        try:
            resp = self.session.post(
                f"{self.storage_url}/object/sign/{quote(self.bucket, safe='')}/{object_path}",
                headers={
                    "Authorization": f"Bearer {self.service_key}",
                    "apikey": self.service_key,
                    "Content-Type": "application/json",
                },
                json={"expiresIn": int(ttl_seconds)},
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise ArtifactStoreError("signing request timed out") from exc
        except requests.RequestException as exc:
            raise ArtifactStoreError(f"signing request failed: {exc}") from exc

        if resp.status_code != 200:
            raise ArtifactStoreError(f"signing request returned status={resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise ArtifactStoreError("signing response was not JSON") from exc

        signed_path = str((data or {}).get("signedURL") or (data or {}).get("signedUrl") or "").strip()
        if not signed_path:
            raise ArtifactStoreError("signing response had no signedURL")
        if signed_path.startswith("http://") or signed_path.startswith("https://"):
            return signed_path
        return f"{self.storage_url}/{signed_path.lstrip('/')}"


class HmacUrlSigner:
    """Signed links for a self-hosted origin that shares ``secret``.

    The origin recomputes the signature over the registered storage path and
    ``expires`` and refuses the request once ``expires`` has passed.
    """

    def __init__(self, base_url: str, secret: str, clock: Callable[[], float] = time.time):
        if not base_url or not secret:
            raise ConfigurationError("Missing ARTIFACT_BASE_URL or ARTIFACT_SIGNING_SECRET env vars")
        self.base_url = base_url.rstrip("/")
        self._secret = secret.encode("utf-8")
        self._clock = clock

    def _signature(self, object_path: str, expires: int) -> str:
        message = f"{object_path}\n{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def create_signed_url(self, path: str, ttl_seconds: int) -> str:
        object_path = _encode_path(path)
        if not object_path:
            raise ArtifactStoreError("empty storage path")
        expires = int(self._clock()) + int(ttl_seconds)
        signature = self._signature(object_path, expires)
        return f"{self.base_url}/{object_path}?expires={expires}&signature={signature}"

    def verify(self, path: str, expires: int, signature: str) -> bool:
        object_path = _encode_path(path)
        if not object_path or int(expires) < int(self._clock()):
            return False
        expected = self._signature(object_path, int(expires))
        return hmac.compare_digest(expected, str(signature or ""))


def build_artifact_signer(kind: str = ARTIFACT_SIGNER):
    if kind == "hmac":
        return HmacUrlSigner(ARTIFACT_BASE_URL, ARTIFACT_SIGNING_SECRET)
    return SupabaseStorageSigner(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)
