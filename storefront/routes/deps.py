from fastapi import Request

from ..core.errors import InternalError
from ..services.download_issuer import DownloadIssuer
from ..services.entitlements import EntitlementStore


def get_entitlement_store(request: Request) -> EntitlementStore:
    store = getattr(request.app.state, "entitlement_store", None)
    if store is None:
        raise InternalError("Server error")
    return store


def get_download_issuer(request: Request) -> DownloadIssuer:
    # None when startup could not build the collaborators (missing secrets).
    issuer = getattr(request.app.state, "download_issuer", None)
    if issuer is None:
        raise InternalError("Server error")
    return issuer
