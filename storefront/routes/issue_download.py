import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool

from ..core.config import DOWNLOAD_CORS_HEADERS
from ..core.errors import DownloadError, InternalError
from ..schemas import DownloadRequestIn, DownloadUrlOut, ErrorOut
from ..services.download_issuer import DownloadIssuer
from ..services.identity import extract_bearer_token
from .deps import get_download_issuer

logger = logging.getLogger(__name__)

ISSUE_DOWNLOAD_PATH = "/issue-download"

router = APIRouter()

_ERROR_RESPONSES = {
    status: {"model": ErrorOut} for status in (400, 401, 403, 404, 405, 500)
}


async def _read_json_body(request: Request):
    raw = await request.body()
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, ValueError):
        return {}


@router.options(ISSUE_DOWNLOAD_PATH, include_in_schema=False)
def issue_download_preflight():
    return Response(status_code=200, headers=DOWNLOAD_CORS_HEADERS)


@router.post(ISSUE_DOWNLOAD_PATH, response_model=DownloadUrlOut, responses=_ERROR_RESPONSES)
async def issue_download(
    request: Request,
    issuer: DownloadIssuer = Depends(get_download_issuer),
):
    token = extract_bearer_token(request.headers.get("authorization"))
    payload = DownloadRequestIn.from_body(await _read_json_body(request))
    try:
        # Identity, store and signing calls all block on network round trips.
        issued = await run_in_threadpool(issuer.issue, token, payload)
    except DownloadError:
        raise
    except Exception as exc:
        logger.exception("Unhandled error")
        raise InternalError("Server error") from exc
    return JSONResponse(
        status_code=200,
        content={"url": issued.url},
        headers=DOWNLOAD_CORS_HEADERS,
    )
