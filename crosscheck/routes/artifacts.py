from __future__ import annotations

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from crosscheck.services.artifacts import get_artifact_store

router = APIRouter(tags=["artifacts"])


@router.get("/artifacts/{artifact_path:path}")
async def read_artifact(artifact_path: str) -> FileResponse:
    root = get_artifact_store().root
    target = (root / artifact_path).resolve()

    # Reject paths escaping the artifact root.
    if root != target and root not in target.parents:
        raise HTTPException(status_code=404, detail="Artifact not found")
    if not target.is_file():
        raise HTTPException(status_code=404, detail="Artifact not found")

    return FileResponse(path=target, media_type="image/png")
