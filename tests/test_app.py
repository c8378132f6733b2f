import asyncio
import contextlib
from dataclasses import replace

import pytest

from assetgate.config import DEFAULT_RATE_LIMITS, Settings
from assetgate.main import _rotation_loop


def test_robots_txt_content(client):
    r = client.get("/robots.txt")
    assert r.status_code == 200
    assert r.text == "User-agent: *\nDisallow: /assets/\n"
    assert r.headers.get("Referrer-Policy") == "no-referrer"


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "checks": {"app": "ok", "storage": "ok"}, "version": "test"}


def test_health_reports_missing_storage(client, app_ctx):
    settings = app_ctx["settings"]
    app_ctx["app"].state.settings = replace(settings, projects_dir=settings.projects_dir / "missing")
    body = client.get("/health").json()
    assert body["status"] == "unhealthy"
    assert body["checks"]["storage"] == "error: FileNotFoundError"


def test_request_id_is_generated_or_propagated(client):
    r = client.get("/health")
    assert len(r.headers["X-Request-Id"]) == 32
    r = client.get("/health", headers={"X-Request-Id": "abc-123"})
    assert r.headers["X-Request-Id"] == "abc-123"
    r = client.get("/health", headers={"X-Request-Id": "bad id!"})
    assert r.headers["X-Request-Id"] != "bad id!"


def test_error_responses_carry_common_headers(client):
    r = client.get("/assets/p1/thumbnail/public.jpg")
    assert r.status_code == 401
    assert r.headers["Referrer-Policy"] == "no-referrer"
    assert "X-Request-Id" in r.headers


def test_unknown_route_is_404(client):
    assert client.get("/assets/p1/unknown/x.jpg").status_code == 404


def test_settings_from_env(tmp_path):
    env = {
        "PROJECTS_DIR": str(tmp_path),
        "DOWNLOAD_SECRET": "dl",
        "AUTH_JWT_SECRET_ACCESS": "jwt",
        "DOWNLOAD_TTL_MS": "5000",
        "REQUIRE_SIGNED_DOWNLOADS": "false",
        "PUBLIC_HASH_TTL_DAYS": "-3",
        "PUBLIC_HASH_ROTATION_INTERVAL_S": "0",
        "ZIP_RATELIMIT_MAX": "5",
        "IMAGE_RATELIMIT_MAX": "lots",
        "TRUSTED_PROXY_NETS": "10.0.0.0/8, ",
        "LOG_LEVEL": "debug",
        "APP_VERSION": "1.2.3",
    }
    s = Settings.from_env(env)
    assert s.projects_dir == tmp_path.resolve()
    assert s.download_ttl_ms == 5000
    assert s.require_signed_downloads is False
    assert s.public_hash_ttl_days == 28
    assert s.public_hash_ttl_ms == 28 * 24 * 60 * 60 * 1000
    assert s.public_hash_rotation_interval_s == 0
    assert s.rate_limits["zip"] == 5
    assert s.rate_limits["image"] == DEFAULT_RATE_LIMITS["image"]
    assert s.trusted_proxy_nets == ("10.0.0.0/8",)
    assert s.log_level == "DEBUG"
    assert s.app_version == "1.2.3"
    assert s.jwt_issuer == "photo-manager"
    assert s.jwt_audience == "photo-manager-admin"


@pytest.mark.parametrize("missing", ["DOWNLOAD_SECRET", "AUTH_JWT_SECRET_ACCESS"])
def test_settings_require_secrets(tmp_path, missing):
    env = {"PROJECTS_DIR": str(tmp_path), "DOWNLOAD_SECRET": "dl", "AUTH_JWT_SECRET_ACCESS": "jwt"}
    env[missing] = " "
    with pytest.raises(RuntimeError):
        Settings.from_env(env)


class FlakyRegistry:
    def __init__(self):
        self.calls = 0

    def rotate_due(self):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("store offline")
        return 0


def test_rotation_loop_keeps_running_after_a_failure():
    registry = FlakyRegistry()

    async def run():
        task = asyncio.create_task(_rotation_loop(registry, 0))
        for _ in range(500):
            if registry.calls >= 3:
                break
            await asyncio.sleep(0.01)
        assert not task.done()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    asyncio.run(run())
    assert registry.calls >= 3
