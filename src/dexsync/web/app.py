"""FastAPI application serving a published distribution root."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from dexsync.config import MANIFEST_FILENAME, VERSION_FILENAME, AppConfig

LOGGER = logging.getLogger(__name__)

IMMUTABLE_CACHE = "public, max-age=31536000, immutable"
MANIFEST_CACHE = "public, max-age=60, must-revalidate"
VERSION_CACHE = "public, max-age=300, must-revalidate"

_SPECIES_DIR = re.compile(r"^\d{4}$")
_REVISION_FILE = re.compile(r"^tidbits\.v[1-9]\d*\.json$")


def _json_file(path: Path, cache_control: str) -> FileResponse:
    if not path.is_file():
        raise HTTPException(status_code=404, detail=f"{path.name} not published")
    return FileResponse(
        path, media_type="application/json", headers={"Cache-Control": cache_control}
    )


def create_app(root: Path) -> FastAPI:
    """Build an app that serves ``root`` as the dataset's distribution root."""
    root = Path(root)
    application = FastAPI(title="dexsync distribution", version="0.1.0")
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "HEAD"],
        allow_headers=["*"],
    )
    application.state.root = root

    @application.on_event("startup")
    async def startup_event() -> None:
        logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
        LOGGER.info("Serving distribution root %s", root)

    @application.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "manifest": (root / MANIFEST_FILENAME).is_file(),
            "version": (root / VERSION_FILENAME).is_file(),
        }

    @application.get(f"/{MANIFEST_FILENAME}")
    async def manifest() -> FileResponse:
        return _json_file(root / MANIFEST_FILENAME, MANIFEST_CACHE)

    @application.get(f"/{VERSION_FILENAME}")
    async def version() -> FileResponse:
        return _json_file(root / VERSION_FILENAME, VERSION_CACHE)

    @application.get("/species/{species_id}/{filename}")
    async def species_payload(species_id: str, filename: str) -> FileResponse:
        # Only ever resolve names of the published shape; nothing else under root is reachable.
        if not _SPECIES_DIR.match(species_id) or not _REVISION_FILE.match(filename):
            raise HTTPException(status_code=404, detail="Not found")
        return _json_file(root / "species" / species_id / filename, IMMUTABLE_CACHE)

    return application


app = create_app(AppConfig().resolve_output_dir(Path.cwd()))
