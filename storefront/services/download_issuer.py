from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol
import logging

from ..core.config import DEMO_CLAIM_FAIL_CLOSED, SIGNED_URL_TTL_SECONDS
from ..core.errors import Forbidden, InternalError, InvalidRequest, NotFound, Unauthenticated
from ..models import DOWNLOAD_KINDS
from ..schemas import DownloadRequestIn
from .artifact_store import ArtifactStoreError, build_artifact_signer
from .entitlements import ClaimOutcome, EntitlementStore, StoreError
from .identity import (
    CallerIdentity,
    IdentityProviderError,
    IdentityRejected,
    build_identity_provider,
)

logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    def verify(self, token: str) -> CallerIdentity: ...


class ArtifactSigner(Protocol):
    def create_signed_url(self, path: str, ttl_seconds: int) -> str: ...


@dataclass(frozen=True)
class IssuedDownload:
    url: str
    expires_in: int


class DownloadIssuer:
    """Decides whether a caller may download a build and, if so, signs a link.

    Built once per process. Holds no per-request state; the only write it
    performs is the first demo claim for a (user, game) pair.
    """

    def __init__(
        self,
        identity: IdentityProvider,
        store: EntitlementStore,
        signer: ArtifactSigner,
        ttl_seconds: int = SIGNED_URL_TTL_SECONDS,
        demo_claim_fail_closed: bool = DEMO_CLAIM_FAIL_CLOSED,
    ):
        self.identity = identity
        self.store = store
        self.signer = signer
        self.ttl_seconds = ttl_seconds
        self.demo_claim_fail_closed = demo_claim_fail_closed

    def issue(self, token: Optional[str], request: DownloadRequestIn) -> IssuedDownload:
        if not token:
            raise Unauthenticated("Missing bearer token")
        caller = self._authenticate(token)

        if not request.game_slug or not request.kind or not request.device:
            raise InvalidRequest("Missing required fields: game_slug, kind, device")
        if request.kind not in DOWNLOAD_KINDS:
            raise InvalidRequest("Invalid kind; expected 'full' or 'demo'")

        if request.kind == "full":
            self._require_purchase(caller, request.game_slug)
        else:
            self._claim_demo(caller, request.game_slug)

        storage_path = self._resolve_storage_path(request.game_slug, request.kind, request.device)
        try:
            url = self.signer.create_signed_url(storage_path, self.ttl_seconds)
        except ArtifactStoreError as exc:
            logger.error("Signed URL error path=%s: %s", storage_path, exc)
            raise InternalError("Failed to create signed URL") from exc
        if not url:
            logger.error("Signed URL error path=%s: empty url", storage_path)
            raise InternalError("Failed to create signed URL")

        logger.info(
            "download issued user=%s slug=%s kind=%s device=%s ttl=%s",
            caller.user_id,
            request.game_slug,
            request.kind,
            request.device,
            self.ttl_seconds,
        )
        return IssuedDownload(url=url, expires_in=self.ttl_seconds)

    def _authenticate(self, token: str) -> CallerIdentity:
        try:
            caller = self.identity.verify(token)
        except IdentityRejected as exc:
            logger.warning("Auth error: %s", exc)
            raise Unauthenticated("Invalid or expired token") from exc
        except IdentityProviderError as exc:
            logger.error("Identity provider error: %s", exc)
            raise InternalError("Authentication service unavailable") from exc
        if caller is None or not caller.user_id:
            raise Unauthenticated("Invalid or expired token")
        return caller

    def _require_purchase(self, caller: CallerIdentity, game_slug: str) -> None:
        try:
            purchase = self.store.find_purchase(caller.user_id, game_slug)
        except StoreError as exc:
            logger.error("Purchase check error: %s", exc)
            raise InternalError("Authorization check failed") from exc
        if purchase is None:
            raise Forbidden("No valid purchase for this game")

    def _claim_demo(self, caller: CallerIdentity, game_slug: str) -> None:
        try:
            claim = self.store.find_demo_claim(caller.user_id, game_slug)
        except StoreError as exc:
            logger.error("Claim check error: %s", exc)
            raise InternalError("Authorization check failed") from exc
        if claim is not None:
            return

        outcome = self.store.insert_demo_claim_if_absent(caller.user_id, game_slug)
        if outcome == ClaimOutcome.CONFLICT:
            logger.warning(
                "Demo claim already recorded by a concurrent request user=%s slug=%s",
                caller.user_id,
                game_slug,
            )
        elif outcome == ClaimOutcome.FAILED:
            if self.demo_claim_fail_closed:
                raise InternalError("Demo claim could not be recorded")
            logger.warning(
                "Demo claim not recorded, issuing anyway user=%s slug=%s",
                caller.user_id,
                game_slug,
            )

    def _resolve_storage_path(self, game_slug: str, kind: str, device: str) -> str:
        try:
            target = self.store.find_latest_download_target(game_slug, kind, device)
        except StoreError as exc:
            logger.error("Download lookup error: %s", exc)
            raise InternalError("Failed to resolve download") from exc
        storage_path = str(getattr(target, "storage_path", None) or "").strip()
        if not storage_path:
            raise NotFound("No download configured for this target")
        return storage_path


def build_download_issuer(store: EntitlementStore) -> DownloadIssuer:
    """Wire the configured collaborators. Raises ConfigurationError."""
    return DownloadIssuer(
        identity=build_identity_provider(),
        store=store,
        signer=build_artifact_signer(),
    )
