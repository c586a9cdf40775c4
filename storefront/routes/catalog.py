import logging

from fastapi import APIRouter, Depends, Query

from ..core.errors import InternalError, InvalidRequest
from ..models import DOWNLOAD_KINDS
from ..schemas import DownloadTargetOut
from ..services.entitlements import EntitlementStore, StoreError
from .deps import get_entitlement_store

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{slug}/downloads", response_model=list[DownloadTargetOut])
def list_game_downloads(
    slug: str,
    kind: str = Query("full"),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    """Devices a build is registered for. Storage paths stay server side."""
    normalized_kind = kind.strip().lower()
    if normalized_kind not in DOWNLOAD_KINDS:
        raise InvalidRequest("Invalid kind; expected 'full' or 'demo'")
    try:
        return store.list_download_targets(slug.strip(), normalized_kind)
    except StoreError as exc:
        logger.error("Download listing error: %s", exc)
        raise InternalError("Failed to list downloads") from exc
