"""Photo asset delivery.

Routes:
  GET  /assets/{folder}/thumbnail/{name}[?hash=]     derivative (webp)
  GET  /assets/{folder}/preview/{name}[?hash=]       derivative (webp)
  GET  /assets/{folder}/image/{name}[?hash=]         full-resolution JPEG
  GET  /assets/{folder}/file/{type}/{name}?token=    original, forced jpg|raw
  GET  /assets/{folder}/files-zip/{name}?token=      zip of all originals
  POST /assets/{folder}/download-url                 mint a signed URL (admin)
  GET  /assets/image/{filename}                      public share metadata

Thumbnail, preview and image are gated on photo visibility; file and
files-zip require a signed token bound to folder, kind and filename.
"""

import logging
import re
from pathlib import Path
from urllib.parse import quote

from fastapi import APIRouter
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.requests import Request

from assetgate.archive import iter_zip
from assetgate.asset_paths import (
    DERIVATIVE_MIME,
    base_from_param,
    derivative_path,
    guess_content_type,
    resolve_original_path,
)
from assetgate.auth import (
    admit_by_visibility,
    project_dir,
    require_admin,
    require_signed_token,
    revoke_public_hash,
    safe_folder,
    safe_name,
)
from assetgate.catalog import find_entry
from assetgate.delivery import attachment_disposition, deliver_file
from assetgate.errors import BadRequest, NotFound, Unauthorized
from assetgate.models import DownloadUrlPayload, PhotoEntry, Project
from assetgate.public_hashes import PublicHashRecord
from assetgate.security import enforce_rate_limit
from assetgate.signing import TOKEN_KINDS

router = APIRouter(prefix="/assets", tags=["assets"])
logger = logging.getLogger(__name__)

ORIGINAL_KINDS = ("jpg", "raw")
_EXT_RE = re.compile(r"\.[A-Za-z0-9]+$")


def _lookup(request: Request, folder: str, name: str, event: str) -> tuple[Project, PhotoEntry, Path]:
    d = project_dir(request.app.state.settings.projects_dir, folder)
    catalog = request.app.state.catalog
    project = catalog.get_project(folder)
    if project is None:
        raise NotFound("Project not found")
    entry, exact = find_entry(catalog, project.id, name)
    logger.info(
        "%s: folder=%s name=%s base=%s tried_exact=%s found=%s",
        event,
        folder,
        name,
        base_from_param(name),
        exact,
        entry is not None,
    )
    if entry is None:
        raise NotFound("Photo not found")
    return project, entry, d


def _hash_headers(record: PublicHashRecord | None) -> dict[str, str]:
    if record is None:
        return {}
    return {
        "X-Public-Hash": record.hash,
        "X-Public-Hash-Expires-At": str(record.expires_at),
    }


def _serve_derivative(request: Request, folder: str, name: str, kind: str):
    label = kind.capitalize()
    enforce_rate_limit(request, kind)
    folder = safe_folder(folder)
    name = safe_name(name)
    _, entry, d = _lookup(request, folder, name, f"{kind}_lookup")
    hash_record = admit_by_visibility(request, entry, f"{label} not found")
    path = derivative_path(d, kind, base_from_param(name))
    if not path.is_file():
        logger.info("%s_missing: folder=%s name=%s", kind, folder, name)
        raise NotFound(f"{label} not found")
    return deliver_file(request, path, DERIVATIVE_MIME, headers=_hash_headers(hash_record))


@router.get("/image/{filename}")
def public_image_metadata(request: Request, filename: str):
    """Resolve a shared photo name to its public hash and asset URLs."""
    name = safe_name(filename.strip())
    catalog = request.app.state.catalog
    has_ext = bool(_EXT_RE.search(name))
    record = catalog.find_any_visibility(name)
    if record is None and not has_ext:
        record = catalog.find_any_visibility_by_basename(name)
    if record is None:
        raise NotFound("Photo not found")
    if not record.is_public:
        revoke_public_hash(request.app.state.hash_registry, record)
        raise Unauthorized("Authentication required", visibility="private")

    hash_record = request.app.state.hash_registry.ensure_hash(record.id)
    folder = record.project_folder or ""
    f = quote(folder, safe="")
    h = quote(hash_record.hash, safe="")
    base_name = record.basename or record.filename
    body = {
        "photo": {
            "id": record.id,
            "project_id": record.project_id,
            "project_folder": folder,
            "filename": record.filename,
            "basename": record.basename,
            "visibility": "public",
            "jpg_available": bool(record.jpg_available),
            "preview_available": bool(record.preview_status) and record.preview_status != "missing",
            "hash": hash_record.hash,
            "hash_expires_at": hash_record.expires_at,
        },
        "assets": {
            "thumbnail_url": f"/assets/{f}/thumbnail/{quote(base_name, safe='')}?hash={h}",
            "preview_url": f"/assets/{f}/preview/{quote(record.filename, safe='')}?hash={h}",
            "image_url": f"/assets/{f}/image/{quote(record.filename, safe='')}?hash={h}",
        },
    }
    return JSONResponse(body, headers={"Cache-Control": "no-store"})


@router.get("/{folder}/thumbnail/{name}")
def serve_thumbnail(request: Request, folder: str, name: str):
    return _serve_derivative(request, folder, name, "thumbnail")


@router.get("/{folder}/preview/{name}")
def serve_preview(request: Request, folder: str, name: str):
    return _serve_derivative(request, folder, name, "preview")


@router.get("/{folder}/image/{name}")
def serve_image(request: Request, folder: str, name: str):
    """Full-resolution JPEG. RAW-only photos are not served here."""
    enforce_rate_limit(request, "image")
    folder = safe_folder(folder)
    name = safe_name(name)
    _, entry, d = _lookup(request, folder, name, "image_lookup")
    hash_record = admit_by_visibility(request, entry, "JPG file not found on disk")
    if not entry.jpg_available:
        logger.info("image_request_no_jpg: folder=%s name=%s", folder, name)
        raise NotFound("Full-res JPG not available")
    base = base_from_param(name)
    path = resolve_original_path(d, base, "jpg", entry)
    logger.info("image_resolve: folder=%s name=%s base=%s jpg=%s", folder, name, base, path)
    if path is None:
        raise NotFound("JPG file not found on disk")
    return deliver_file(request, path, "image/jpeg", headers=_hash_headers(hash_record))


@router.get("/{folder}/file/{kind}/{name}")
def serve_original(request: Request, folder: str, kind: str, name: str):
    enforce_rate_limit(request, "image")
    require_signed_token(request, folder, name, kind)
    folder = safe_folder(folder)
    name = safe_name(name)
    _, entry, d = _lookup(request, folder, name, "file_lookup")
    if kind not in ORIGINAL_KINDS:
        raise BadRequest("Unsupported type. Use raw or jpg.")
    base = base_from_param(name)
    path = resolve_original_path(d, base, kind, entry)
    logger.info("file_resolve: folder=%s kind=%s name=%s base=%s chosen=%s", folder, kind, name, base, path)
    if path is None:
        raise NotFound("Requested file not found")
    return deliver_file(request, path, guess_content_type(path), download_name=path.name)


@router.get("/{folder}/files-zip/{name}")
def serve_zip(request: Request, folder: str, name: str):
    enforce_rate_limit(request, "zip")
    require_signed_token(request, folder, name, "zip")
    folder = safe_folder(folder)
    name = safe_name(name)
    _, entry, d = _lookup(request, folder, name, "zip_lookup")
    base = base_from_param(name)
    jpg_path = resolve_original_path(d, base, "jpg", entry)
    raw_path = resolve_original_path(d, base, "raw", entry)
    logger.info("zip_resolve: folder=%s name=%s base=%s jpg=%s raw=%s", folder, name, base, jpg_path, raw_path)
    members = [(p, p.name) for p in (jpg_path, raw_path) if p is not None]
    if not members:
        raise NotFound("No related files found to zip")
    for p, _ in members:
        if not p.is_file():
            raise NotFound("No related files found to zip")

    def stream():
        try:
            yield from iter_zip(members)
        except Exception:
            # Headers are out; re-raising makes the server drop the connection.
            logger.exception("zip_stream_error: folder=%s name=%s", folder, name)
            raise

    return StreamingResponse(
        stream(),
        media_type="application/zip",
        headers={
            "Content-Disposition": attachment_disposition(f"{base}.zip"),
            "Cache-Control": "no-store",
        },
    )


@router.post("/{folder}/download-url")
def mint_download_url(request: Request, folder: str, payload: DownloadUrlPayload):
    require_admin(request)
    if not payload.filename or payload.type not in TOKEN_KINDS:
        raise BadRequest("Invalid parameters")
    folder = safe_folder(folder)
    catalog = request.app.state.catalog
    project = catalog.get_project(folder)
    if project is None:
        raise NotFound("Project not found")
    entry, exact = find_entry(catalog, project.id, payload.filename)
    logger.info(
        "download_url_lookup: folder=%s name=%s tried_exact=%s found=%s",
        folder,
        payload.filename,
        exact,
        entry is not None,
    )
    if entry is None:
        raise NotFound("Photo not found")
    url = request.app.state.signer.build_url(folder, payload.type, payload.filename, payload.ttlMs)
    return {"url": url}
