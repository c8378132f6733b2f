"""Cache validators and cache policy for delivered files."""

import logging
import os
from pathlib import Path
from typing import Mapping
from urllib.parse import quote

from fastapi.responses import FileResponse, Response
from starlette.requests import Request

from assetgate.errors import Internal, NotFound

logger = logging.getLogger(__name__)

VERSIONED_CACHE_CONTROL = "public, max-age=31536000, immutable"
DEFAULT_CACHE_CONTROL = "public, max-age=60"


def attachment_disposition(filename: str) -> str:
    quoted = quote(filename)
    if quoted != filename:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{filename}"'


def compute_etag(st: os.stat_result) -> str:
    mtime_ms = st.st_mtime_ns // 1_000_000
    return f'W/"{st.st_size}-{mtime_ms:x}"'


def cache_control(query_params: Mapping[str, str]) -> str:
    # A ?v= discriminator pins the content, anything else may be regenerated.
    if "v" in query_params:
        return VERSIONED_CACHE_CONTROL
    return DEFAULT_CACHE_CONTROL


def is_not_modified(headers: Mapping[str, str], etag: str) -> bool:
    return headers.get("if-none-match") == etag


def stat_file(path: Path) -> os.stat_result:
    """Stat the file about to be served; never cached between requests."""
    try:
        st = os.stat(path)
    except FileNotFoundError:
        raise NotFound("File not found")
    except OSError:
        logger.exception("stat failed: path=%s", path)
        raise Internal("Failed to read file")
    return st


def deliver_file(
    request: Request,
    path: Path,
    media_type: str,
    headers: dict[str, str] | None = None,
    download_name: str | None = None,
) -> Response:
    st = stat_file(path)
    etag = compute_etag(st)
    cc = cache_control(request.query_params)
    if is_not_modified(request.headers, etag):
        return Response(status_code=304, headers={"ETag": etag, "Cache-Control": cc})

    out = {"ETag": etag, "Cache-Control": cc, **(headers or {})}
    if download_name is not None:
        out["Content-Disposition"] = attachment_disposition(download_name)
    return FileResponse(path, media_type=media_type, headers=out, stat_result=st)
