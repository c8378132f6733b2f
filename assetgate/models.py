from dataclasses import dataclass

from pydantic import BaseModel

VISIBILITIES = ("public", "private")


def normalize_visibility(raw) -> str:
    value = str(raw or "").strip().lower()
    return value if value in VISIBILITIES else "private"


@dataclass(frozen=True, slots=True)
class Project:
    id: int
    folder: str
    name: str = ""


@dataclass(frozen=True, slots=True)
class PhotoEntry:
    id: int
    project_id: int
    filename: str
    basename: str | None = None
    ext: str | None = None
    visibility: str = "private"
    jpg_available: bool = False
    raw_available: bool = False
    preview_status: str | None = None
    project_folder: str | None = None

    @property
    def is_public(self) -> bool:
        return normalize_visibility(self.visibility) == "public"


@dataclass(frozen=True, slots=True)
class AdminPrincipal:
    id: str
    role: str
    token_id: str | None = None


class DownloadUrlPayload(BaseModel):
    filename: str
    type: str
    ttlMs: int | None = None
