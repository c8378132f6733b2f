import logging
import os
from pathlib import Path

from assetgate.models import PhotoEntry

logger = logging.getLogger(__name__)

JPG_EXTS = (".jpg", ".jpeg")
RAW_EXTS = (".cr2", ".nef", ".arw", ".dng", ".raw")
KNOWN_EXTS = frozenset(JPG_EXTS + RAW_EXTS)

_FAMILIES = {"jpg": JPG_EXTS, "raw": RAW_EXTS}

DERIVATIVE_DIRS = {"thumbnail": ".thumb", "preview": ".preview"}
DERIVATIVE_SUFFIX = ".webp"
DERIVATIVE_MIME = "image/webp"


def _split_ext(name: str) -> tuple[str, str]:
    stem, ext = os.path.splitext(name)
    return stem, ext


def base_from_param(name: str) -> str:
    """Strip a trailing photo extension; leave any other suffix alone.

    ``IMG_1.JPG`` -> ``IMG_1`` but ``shot.example.com`` stays as is.
    """
    stem, ext = _split_ext(name)
    if ext.lower() in KNOWN_EXTS:
        return stem
    return name


def candidate_exts(prefer: str, entry: PhotoEntry | None = None) -> list[str]:
    family = _FAMILIES.get(prefer)
    if family is None:
        return []
    order: list[str] = []
    hint = ((entry.ext if entry else None) or "").lower()
    if hint and not hint.startswith("."):
        hint = "." + hint
    if hint in family:
        order.append(hint)
    order.extend(e for e in family if e not in order)
    return order


def resolve_original_path(
    project_dir: Path,
    base: str,
    prefer: str,
    entry: PhotoEntry | None = None,
) -> Path | None:
    """Find the on-disk original for ``base`` in the ``prefer`` family.

    Exact-case candidates are tried first; only if none exists is the
    directory scanned once with case-insensitive basename and extension
    matching. Returns None when nothing matches.
    """
    order = candidate_exts(prefer, entry)
    if not order or not base:
        return None
    project_dir = Path(project_dir)
    for ext in order:
        fp = project_dir / f"{base}{ext}"
        if fp.is_file():
            return fp

    allow = set(order)
    base_lower = base.lower()
    try:
        with os.scandir(project_dir) as it:
            for dirent in it:
                if not dirent.is_file():
                    continue
                stem, ext = _split_ext(dirent.name)
                if ext.lower() in allow and stem.lower() == base_lower:
                    return project_dir / dirent.name
    except OSError as e:
        logger.debug("resolve scan failed: dir=%s error=%s", project_dir, e)
    return None


def derivative_path(project_dir: Path, kind: str, base: str) -> Path:
    return Path(project_dir) / DERIVATIVE_DIRS[kind] / f"{base}{DERIVATIVE_SUFFIX}"


def guess_content_type(path: Path | str) -> str:
    # RAW formats go out as opaque bytes
    if _split_ext(str(path))[1].lower() in JPG_EXTS:
        return "image/jpeg"
    return "application/octet-stream"
