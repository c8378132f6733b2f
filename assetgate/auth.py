import logging
import re
from pathlib import Path

from starlette.requests import Request

from assetgate.admin_session import get_optional_admin
from assetgate.errors import BadRequest, NotFound, Unauthorized
from assetgate.models import AdminPrincipal, PhotoEntry
from assetgate.public_hashes import PublicHashRecord, PublicHashRegistry

logger = logging.getLogger(__name__)

SAFE_NAME_RE = re.compile(r"^[^/\\\x00-\x1f\x7f]{1,255}$")


def _safe_segment(value: str, what: str) -> str:
    if (
        not value
        or not SAFE_NAME_RE.match(value)
        or value in (".", "..")
        or value.startswith(".")
        or value != value.strip()
    ):
        raise BadRequest(f"invalid {what}")
    return value


def safe_name(name: str) -> str:
    return _safe_segment(name, "filename")


def safe_folder(folder: str) -> str:
    return _safe_segment(folder, "folder")


def project_dir(projects_dir: Path, folder: str) -> Path:
    base = Path(projects_dir).resolve()
    d = (base / safe_folder(folder)).resolve()
    if not d.is_relative_to(base) or d == base:
        raise BadRequest("invalid folder")
    return d


def optional_admin(request: Request) -> AdminPrincipal | None:
    """Admin principal for this request, computed once and cached on state."""
    if not hasattr(request.state, "admin"):
        request.state.admin = get_optional_admin(
            request.headers, request.cookies, request.app.state.token_verifier
        )
    return request.state.admin


def require_admin(request: Request) -> AdminPrincipal:
    admin = optional_admin(request)
    if admin is None:
        raise Unauthorized("Authentication required")
    return admin


def require_signed_token(request: Request, folder: str, filename: str, kind: str) -> dict | None:
    """Admit only a valid, unexpired token minted for exactly this resource.

    Runs before any catalog or filesystem access.
    """
    if not request.app.state.settings.require_signed_downloads:
        return None
    token = request.query_params.get("token")
    if not token:
        raise Unauthorized("Missing token")
    check = request.app.state.signer.verify(token)
    if not check.ok:
        logger.info("signed token rejected: folder=%s name=%s reason=%s", folder, filename, check.reason)
        raise Unauthorized("Invalid token")
    payload = check.payload
    if payload.get("f") != folder or payload.get("n") != filename or payload.get("t") != kind:
        logger.info(
            "signed token mismatch: folder=%s name=%s kind=%s token_f=%s token_n=%s token_t=%s",
            folder,
            filename,
            kind,
            payload.get("f"),
            payload.get("n"),
            payload.get("t"),
        )
        raise Unauthorized("Token does not match request")
    return payload


def revoke_public_hash(registry: PublicHashRegistry, entry: PhotoEntry) -> None:
    """Drop any hash left over from when a now-private photo was public."""
    if registry.store.get(entry.id) is not None:
        registry.invalidate(entry.id)
        logger.info("public hash revoked: photo_id=%s", entry.id)


def admit_by_visibility(request: Request, entry: PhotoEntry, hidden_message: str) -> PublicHashRecord | None:
    """Gate a derivative or full-image request on the photo's visibility.

    Private photos are only served to admins; anyone else gets a 404 as if the
    photo did not exist. Public photos are served to admins (who receive the
    current public hash) or to callers presenting a valid hash. Returns the
    hash record to expose in response headers, if any.
    """
    admin = optional_admin(request)
    registry = request.app.state.hash_registry
    if not entry.is_public:
        revoke_public_hash(registry, entry)
        if admin is None:
            raise NotFound(hidden_message)
        return None
    if admin is not None:
        return registry.get_active(entry.id) or registry.ensure_hash(entry.id)
    check = registry.validate(entry.id, request.query_params.get("hash"))
    if not check.ok:
        logger.info("public hash rejected: photo_id=%s reason=%s", entry.id, check.reason)
        raise Unauthorized("Public hash invalid", reason=check.reason)
    return check.record
