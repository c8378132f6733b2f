"""Read-only lookups of projects and photos.

The photo database is owned elsewhere; this service only needs the lookups
below. ``JsonCatalog`` reads a ``_catalog.json`` export from the projects
directory so the service can run standalone, ``MemoryCatalog`` backs tests.
"""

import json
import logging
import threading
from dataclasses import replace
from pathlib import Path
from typing import Iterable, Protocol

from assetgate.asset_paths import base_from_param
from assetgate.models import PhotoEntry, Project, normalize_visibility

logger = logging.getLogger(__name__)

CATALOG_FILE = "_catalog.json"


class PhotoCatalog(Protocol):
    def get_project(self, folder: str) -> Project | None: ...

    def get_by_filename(self, project_id: int, filename: str) -> PhotoEntry | None: ...

    def get_by_basename(self, project_id: int, basename: str) -> PhotoEntry | None: ...

    def find_any_visibility(self, filename: str) -> PhotoEntry | None: ...

    def find_any_visibility_by_basename(self, basename: str) -> PhotoEntry | None: ...


def find_entry(catalog: PhotoCatalog, project_id: int, name: str) -> tuple[PhotoEntry | None, bool]:
    """Exact filename first, then basename.

    Share links address thumbnails by bare basename, so the basename lookup
    also runs when the name carries no photo extension. Returns the entry
    (or None) and whether the exact lookup hit.
    """
    entry = catalog.get_by_filename(project_id, name)
    if entry is not None:
        return entry, True
    base = base_from_param(name)
    if base:
        return catalog.get_by_basename(project_id, base), False
    return None, False


class MemoryCatalog:
    def __init__(self, projects: Iterable[Project] = (), photos: Iterable[PhotoEntry] = ()):
        self._lock = threading.Lock()
        self._projects: dict[str, Project] = {}
        self._photos: list[PhotoEntry] = []
        for p in projects:
            self.add_project(p)
        for ph in photos:
            self.add_photo(ph)

    def add_project(self, project: Project) -> Project:
        with self._lock:
            self._projects[project.folder] = project
        return project

    def add_photo(self, photo: PhotoEntry) -> PhotoEntry:
        with self._lock:
            folder = photo.project_folder
            if folder is None:
                folder = next((p.folder for p in self._projects.values() if p.id == photo.project_id), None)
            if photo.project_folder != folder:
                photo = replace(photo, project_folder=folder)
            self._photos = [x for x in self._photos if x.id != photo.id]
            self._photos.append(photo)
        return photo

    def get_project(self, folder: str) -> Project | None:
        with self._lock:
            return self._projects.get(folder)

    def _first(self, pred) -> PhotoEntry | None:
        with self._lock:
            return next((p for p in self._photos if pred(p)), None)

    def get_by_filename(self, project_id: int, filename: str) -> PhotoEntry | None:
        return self._first(lambda p: p.project_id == project_id and p.filename == filename)

    def get_by_basename(self, project_id: int, basename: str) -> PhotoEntry | None:
        return self._first(lambda p: p.project_id == project_id and p.basename == basename)

    def find_any_visibility(self, filename: str) -> PhotoEntry | None:
        return self._first(lambda p: p.filename == filename)

    def find_any_visibility_by_basename(self, basename: str) -> PhotoEntry | None:
        return self._first(lambda p: p.basename == basename)


def _project_from(raw: dict) -> Project | None:
    try:
        return Project(id=int(raw["id"]), folder=str(raw["folder"]), name=str(raw.get("name") or ""))
    except (KeyError, TypeError, ValueError):
        return None


def _photo_from(raw: dict, folders: dict[int, str]) -> PhotoEntry | None:
    try:
        project_id = int(raw["project_id"])
        return PhotoEntry(
            id=int(raw["id"]),
            project_id=project_id,
            filename=str(raw["filename"]),
            basename=raw.get("basename"),
            ext=raw.get("ext"),
            visibility=normalize_visibility(raw.get("visibility")),
            jpg_available=bool(raw.get("jpg_available")),
            raw_available=bool(raw.get("raw_available")),
            preview_status=raw.get("preview_status"),
            project_folder=folders.get(project_id),
        )
    except (KeyError, TypeError, ValueError):
        return None


class JsonCatalog:
    """Catalog backed by ``{"projects": [...], "photos": [...]}`` on disk.

    The file is re-read when its mtime changes.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._mtime_ns: int | None = None
        self._mem = MemoryCatalog()

    def _current(self) -> MemoryCatalog:
        try:
            mtime_ns = self.path.stat().st_mtime_ns
        except OSError:
            return MemoryCatalog()
        with self._lock:
            if mtime_ns != self._mtime_ns:
                self._mem = self._load()
                self._mtime_ns = mtime_ns
            return self._mem

    def _load(self) -> MemoryCatalog:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("catalog unreadable: %s", self.path)
            return MemoryCatalog()
        if not isinstance(data, dict):
            return MemoryCatalog()
        projects = [p for p in (_project_from(x) for x in data.get("projects") or [] if isinstance(x, dict)) if p]
        folders = {p.id: p.folder for p in projects}
        photos = [
            ph for ph in (_photo_from(x, folders) for x in data.get("photos") or [] if isinstance(x, dict)) if ph
        ]
        return MemoryCatalog(projects, photos)

    def get_project(self, folder: str) -> Project | None:
        return self._current().get_project(folder)

    def get_by_filename(self, project_id: int, filename: str) -> PhotoEntry | None:
        return self._current().get_by_filename(project_id, filename)

    def get_by_basename(self, project_id: int, basename: str) -> PhotoEntry | None:
        return self._current().get_by_basename(project_id, basename)

    def find_any_visibility(self, filename: str) -> PhotoEntry | None:
        return self._current().find_any_visibility(filename)

    def find_any_visibility_by_basename(self, basename: str) -> PhotoEntry | None:
        return self._current().find_any_visibility_by_basename(basename)
