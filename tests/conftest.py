import time
from pathlib import Path

import jwt
import pytest
from fastapi.testclient import TestClient

from assetgate.catalog import MemoryCatalog
from assetgate.config import Settings
from assetgate.main import create_app
from assetgate.models import PhotoEntry, Project
from assetgate.public_hashes import MemoryHashStore

TEST_DOWNLOAD_SECRET = "test-download-secret"
TEST_JWT_SECRET = "test-jwt-access-secret"
PROJECT_FOLDER = "p1"
START_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def write_file(path: Path, data: bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def make_admin_token(secret: str = TEST_JWT_SECRET, **overrides) -> str:
    claims = {
        "sub": "admin-1",
        "role": "admin",
        "tokenType": "access",
        "iss": "photo-manager",
        "aud": "photo-manager-admin",
        "exp": int(time.time()) + 3600,
    }
    claims.update(overrides)
    return jwt.encode(claims, secret, algorithm="HS256")


def _seed_photos() -> list[PhotoEntry]:
    return [
        PhotoEntry(id=1, project_id=1, filename="public.jpg", basename="public", ext="jpg",
                   visibility="public", jpg_available=True, preview_status="generated"),
        PhotoEntry(id=2, project_id=1, filename="private.jpg", basename="private", ext="jpg",
                   visibility="private", jpg_available=True, preview_status="generated"),
        PhotoEntry(id=3, project_id=1, filename="pair.jpg", basename="pair", ext="jpg",
                   visibility="private", jpg_available=True, raw_available=True),
        PhotoEntry(id=4, project_id=1, filename="rawonly.arw", basename="rawonly", ext="arw",
                   visibility="public", jpg_available=False, raw_available=True),
        PhotoEntry(id=5, project_id=1, filename="ghost.jpg", basename="ghost", ext="jpg",
                   visibility="public", jpg_available=True),
    ]


def _seed_files(project_dir: Path) -> None:
    write_file(project_dir / "public.jpg", b"public-jpeg-bytes")
    write_file(project_dir / "private.jpg", b"private-jpeg-bytes")
    write_file(project_dir / "pair.jpg", b"pair-jpeg-bytes" * 100)
    write_file(project_dir / "pair.NEF", b"pair-raw-bytes" * 100)
    write_file(project_dir / "rawonly.arw", b"raw-only-bytes")
    for base in ("public", "private", "rawonly"):
        write_file(project_dir / ".thumb" / f"{base}.webp", f"thumb-{base}".encode())
        write_file(project_dir / ".preview" / f"{base}.webp", f"preview-{base}".encode())


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def projects_dir(tmp_path: Path) -> Path:
    base = tmp_path / "projects"
    _seed_files(base / PROJECT_FOLDER)
    return base


@pytest.fixture()
def settings(projects_dir: Path) -> Settings:
    return Settings(
        projects_dir=projects_dir,
        download_secret=TEST_DOWNLOAD_SECRET,
        jwt_access_secret=TEST_JWT_SECRET,
        public_hash_rotation_interval_s=0,
        app_version="test",
    )


@pytest.fixture()
def catalog() -> MemoryCatalog:
    return MemoryCatalog(
        projects=[Project(id=1, folder=PROJECT_FOLDER, name="Project One")],
        photos=_seed_photos(),
    )


@pytest.fixture()
def app_ctx(settings: Settings, catalog: MemoryCatalog, clock: FakeClock) -> dict:
    app = create_app(settings, catalog=catalog, hash_store=MemoryHashStore(), clock=clock)
    return {
        "app": app,
        "settings": settings,
        "catalog": catalog,
        "clock": clock,
        "registry": app.state.hash_registry,
        "signer": app.state.signer,
        "project_dir": settings.projects_dir / PROJECT_FOLDER,
    }


@pytest.fixture()
def client(app_ctx: dict):
    with TestClient(app_ctx["app"]) as c:
        yield c


@pytest.fixture()
def registry(app_ctx: dict):
    return app_ctx["registry"]


@pytest.fixture()
def signer(app_ctx: dict):
    return app_ctx["signer"]


@pytest.fixture()
def admin_headers() -> dict:
    return {"Authorization": f"Bearer {make_admin_token()}"}
