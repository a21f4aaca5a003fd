"""Version history API route."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from cloudrelay.server.api.deps import get_user_id, get_versions
from cloudrelay.server.schemas import FileVersionResponse, version_to_response
from cloudrelay.server.versions import VersionRecorder

router = APIRouter(prefix="/api", tags=["versions"])


@router.get("/files/{file_id}/versions", response_model=list[FileVersionResponse])
def file_versions(
    file_id: int,
    versions: VersionRecorder = Depends(get_versions),
    user_id: str = Depends(get_user_id),
) -> list[FileVersionResponse]:
    """Version chain of a file, newest first."""
    mapping = versions.get_mapping_by_id(file_id)
    if mapping is None or mapping.user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"File not found: {file_id}",
        )
    return [version_to_response(v) for v in versions.history(file_id)]
