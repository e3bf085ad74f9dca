"""
Read-only browse routes and template rendering for webdisk
"""

import logging
from pathlib import Path
from typing import List, Tuple
from urllib.parse import quote

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import FileResponse, HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from . import __version__
from .fs import FileSystemError, MalformedPathError, PathSafetyError, list_directory, safe_join
from .gate import MOUNT_PATH
from .utils import format_file_size, format_timestamp

logger = logging.getLogger(__name__)

# UI router
ui_router = APIRouter(tags=["ui"])

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
templates.env.filters["filesize"] = format_file_size
templates.env.filters["timestamp"] = format_timestamp


def url_for_path(rel_path: str) -> str:
    return "/" + quote(rel_path.strip("/"))


def breadcrumbs(rel_path: str) -> List[Tuple[str, str]]:
    """(name, href) pairs from the root down to rel_path"""
    crumbs = [("/", "/")]
    parts = [part for part in rel_path.split("/") if part]
    for i, part in enumerate(parts):
        crumbs.append((part, url_for_path("/".join(parts[: i + 1])) + "/"))
    return crumbs


@ui_router.get("/", response_class=HTMLResponse)
async def index(request: Request):
    """Listing of the storage root"""
    return await browse(request, "")


@ui_router.get("/{path:path}")
async def browse(request: Request, path: str):
    """Directory listing or file download below the storage root"""

    # /webdav/... is served by the mount; only the bare prefix lands here
    if path.strip("/") == MOUNT_PATH.strip("/"):
        return RedirectResponse(MOUNT_PATH + "/", status_code=301)

    config = request.app.state.config

    try:
        target = safe_join(config.storage_root, path)
    except MalformedPathError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PathSafetyError as e:
        logger.warning(f"Browse request rejected: {path} - {e}")
        raise HTTPException(status_code=403, detail="Forbidden")

    if not target.exists():
        raise HTTPException(status_code=404, detail="Not found")

    if target.is_file():
        return FileResponse(target)

    try:
        entries = await list_directory(target)
    except FileSystemError as e:
        logger.error(f"Browse listing failed for {target}: {e}")
        raise HTTPException(status_code=500, detail="Failed to list directory")

    rel_path = path.strip("/")
    context = {
        "path": "/" + rel_path,
        "base": url_for_path(rel_path).rstrip("/") + "/",
        "parent": url_for_path(rel_path.rsplit("/", 1)[0]) if "/" in rel_path else "/",
        "is_root": not rel_path,
        "breadcrumbs": breadcrumbs(rel_path),
        "entries": entries,
        "webdav_enabled": config.webdav.enabled,
        "webdav_path": MOUNT_PATH + "/",
        "version": __version__,
    }
    return templates.TemplateResponse(request, "index.html", context)


def setup_ui_routes(app):
    """Setup UI routes"""
    app.include_router(ui_router)
    logger.debug("UI routes setup complete")
