import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

_PROJECT_ROOT = Path(__file__).resolve().parent.parent

DEFAULT_DOWNLOAD_TTL_MS = 2 * 60 * 1000
DEFAULT_PUBLIC_HASH_TTL_DAYS = 28
DEFAULT_ROTATION_INTERVAL_S = 3600
DEFAULT_RATE_LIMITS = {
    "thumbnail": 600,
    "preview": 600,
    "image": 120,
    "zip": 30,
}
_RATE_LIMIT_ENV = {
    "thumbnail": "THUMBNAIL_RATELIMIT_MAX",
    "preview": "PREVIEW_RATELIMIT_MAX",
    "image": "IMAGE_RATELIMIT_MAX",
    "zip": "ZIP_RATELIMIT_MAX",
}


def _resolve_app_version(env: Mapping[str, str]) -> str:
    env_version = (env.get("APP_VERSION") or "").strip()
    if env_version:
        return env_version
    file_version = (_PROJECT_ROOT / ".version")
    if file_version.exists():
        from_file = file_version.read_text(encoding="utf-8").strip()
        if from_file:
            return from_file
    try:
        commit = subprocess.check_output(
            ["git", "rev-parse", "--short", "HEAD"],
            cwd=str(_PROJECT_ROOT),
            text=True,
            stderr=subprocess.DEVNULL,
        ).strip()
        return commit or "dev"
    except (OSError, subprocess.SubprocessError):
        return "dev"


def _positive_int(raw: str | None, default: int) -> int:
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _non_negative_int(raw: str | None, default: int) -> int:
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return default
    return value if value >= 0 else default


def _flag(raw: str | None, default: bool) -> bool:
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _required(env: Mapping[str, str], name: str) -> str:
    value = (env.get(name) or "").strip()
    if not value:
        raise RuntimeError(f"{name} is required")
    return value


@dataclass(frozen=True, slots=True)
class Settings:
    """Runtime configuration, injected into every component.

    Nothing reads the environment after ``from_env`` has built this object,
    so tests can run several apps side by side with different secrets.
    """

    projects_dir: Path
    download_secret: str
    jwt_access_secret: str
    jwt_issuer: str = "photo-manager"
    jwt_audience: str = "photo-manager-admin"
    download_ttl_ms: int = DEFAULT_DOWNLOAD_TTL_MS
    require_signed_downloads: bool = True
    public_hash_ttl_days: int = DEFAULT_PUBLIC_HASH_TTL_DAYS
    public_hash_rotation_interval_s: int = DEFAULT_ROTATION_INTERVAL_S
    rate_limits: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_RATE_LIMITS))
    rate_limit_window_s: float = 60.0
    trusted_proxy_nets: tuple[str, ...] = ("127.0.0.1/32", "::1/128")
    log_level: str = "INFO"
    app_version: str = "dev"

    @property
    def public_hash_ttl_ms(self) -> int:
        return self.public_hash_ttl_days * 24 * 60 * 60 * 1000

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        projects_dir = Path(env.get("PROJECTS_DIR") or str(_PROJECT_ROOT / ".projects")).resolve()
        rate_limits = {
            name: _positive_int(env.get(var), DEFAULT_RATE_LIMITS[name])
            for name, var in _RATE_LIMIT_ENV.items()
        }
        proxies = tuple(
            p.strip()
            for p in (env.get("TRUSTED_PROXY_NETS") or "127.0.0.1/32,::1/128").split(",")
            if p.strip()
        )
        return cls(
            projects_dir=projects_dir,
            download_secret=_required(env, "DOWNLOAD_SECRET"),
            jwt_access_secret=_required(env, "AUTH_JWT_SECRET_ACCESS"),
            jwt_issuer=(env.get("AUTH_JWT_ISSUER") or "photo-manager").strip(),
            jwt_audience=(env.get("AUTH_JWT_AUDIENCE") or "photo-manager-admin").strip(),
            download_ttl_ms=_positive_int(env.get("DOWNLOAD_TTL_MS"), DEFAULT_DOWNLOAD_TTL_MS),
            require_signed_downloads=_flag(env.get("REQUIRE_SIGNED_DOWNLOADS"), True),
            public_hash_ttl_days=_positive_int(
                env.get("PUBLIC_HASH_TTL_DAYS"), DEFAULT_PUBLIC_HASH_TTL_DAYS
            ),
            public_hash_rotation_interval_s=_non_negative_int(
                env.get("PUBLIC_HASH_ROTATION_INTERVAL_S"), DEFAULT_ROTATION_INTERVAL_S
            ),
            rate_limits=rate_limits,
            trusted_proxy_nets=proxies,
            log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
            app_version=_resolve_app_version(env),
        )
