"""
Signed artifact downloads for the local store.
The signature in the query string is the only authorization.
"""
import logging

from fastapi import APIRouter, Query
from fastapi.responses import FileResponse

from mediaflow.storage import InvalidArtifactKey, LocalArtifactStore, get_artifact_store
from mediaflow.storage.base import guess_content_type
from ..exceptions import ForbiddenError, NotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/artifacts", tags=["Artifacts"])


@router.get(
    "/{key:path}",
    summary="Download Artifact",
    description="Serve a stored artifact if the signed URL is valid and unexpired.",
)
async def download_artifact(
    key: str,
    expires: int = Query(...),
    sig: str = Query(..., min_length=1),
) -> FileResponse:
    store = get_artifact_store()
    if not isinstance(store, LocalArtifactStore):
        raise NotFoundError("Artifact", key)

    try:
        path = store.path_for(key)
    except InvalidArtifactKey:
        raise NotFoundError("Artifact", key)

    if not store.verify(key, expires, sig):
        logger.warning(f"[STORE] Rejected download of {key}: bad or expired signature")
        raise ForbiddenError("Signed URL is invalid or expired", code="INVALID_SIGNATURE")

    if not path.is_file():
        raise NotFoundError("Artifact", key)

    return FileResponse(path, media_type=guess_content_type(str(path)), filename=path.name)
