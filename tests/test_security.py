import pytest
from starlette.requests import Request

from assetgate.admin_session import AccessTokenVerifier, get_optional_admin
from assetgate.auth import project_dir, safe_folder, safe_name
from assetgate.errors import BadRequest
from assetgate.security import ClientIpResolver, RateLimitPolicy, SlidingWindowRateLimiter
from conftest import TEST_JWT_SECRET, make_admin_token


def _request(peer: str, headers: dict | None = None) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": (peer, 12345),
    }
    return Request(scope)


def _verifier() -> AccessTokenVerifier:
    return AccessTokenVerifier(TEST_JWT_SECRET, "photo-manager", "photo-manager-admin")


def test_safe_name_rejects_control_characters():
    with pytest.raises(BadRequest) as e:
        safe_name("bad\nname.jpg")
    assert e.value.status_code == 400
    assert e.value.message == "invalid filename"


def test_safe_name_rejects_path_separators():
    with pytest.raises(BadRequest):
        safe_name("a/b.jpg")
    with pytest.raises(BadRequest):
        safe_name("a\\b.jpg")


@pytest.mark.parametrize("name", ["", ".", "..", ".hidden.jpg", " a.jpg", "a.jpg "])
def test_safe_name_rejects_dot_and_blank_names(name):
    with pytest.raises(BadRequest):
        safe_name(name)


def test_safe_name_accepts_ordinary_names():
    assert safe_name("IMG 1 (copy).JPG") == "IMG 1 (copy).JPG"
    assert safe_folder("Summer 2024") == "Summer 2024"


def test_project_dir_stays_under_root(tmp_path):
    assert project_dir(tmp_path, "p1") == (tmp_path / "p1").resolve()
    with pytest.raises(BadRequest):
        project_dir(tmp_path, "..")
    with pytest.raises(BadRequest):
        project_dir(tmp_path, "a/../../etc")


def test_rate_limiter_blocks_after_limit():
    rl = SlidingWindowRateLimiter(limit=3, window_s=60.0)
    assert rl.allow("k", now=100.0) is True
    assert rl.allow("k", now=100.0) is True
    assert rl.allow("k", now=100.0) is True
    assert rl.allow("k", now=100.0) is False
    assert rl.allow("k", now=161.0) is True


def test_rate_limit_policy_is_per_class_and_key():
    policy = RateLimitPolicy({"zip": 1, "image": 2}, window_s=60.0)
    assert policy.check("zip", "1.1.1.1", now=0.0) is True
    assert policy.check("zip", "1.1.1.1", now=0.0) is False
    assert policy.check("zip", "2.2.2.2", now=0.0) is True
    assert policy.check("image", "1.1.1.1", now=0.0) is True
    assert policy.check("unknown", "1.1.1.1", now=0.0) is True


def test_client_ip_ignores_forwarded_from_untrusted_peer():
    resolve = ClientIpResolver(["127.0.0.1/32"])
    req = _request("203.0.113.9", {"X-Forwarded-For": "198.51.100.1"})
    assert resolve(req) == "203.0.113.9"


def test_client_ip_uses_forwarded_from_trusted_proxy():
    resolve = ClientIpResolver(["127.0.0.1/32", "10.0.0.0/8"])
    req = _request("127.0.0.1", {"X-Forwarded-For": "198.51.100.1, 10.0.0.5"})
    assert resolve(req) == "198.51.100.1"
    req = _request("127.0.0.1", {"X-Real-IP": "198.51.100.7"})
    assert resolve(req) == "198.51.100.7"


def test_optional_admin_from_bearer_or_cookie():
    token = make_admin_token()
    admin = get_optional_admin({"authorization": f"Bearer {token}"}, {}, _verifier())
    assert admin is not None
    assert admin.id == "admin-1"
    assert admin.role == "admin"
    assert get_optional_admin({}, {"pm_access_token": token}, _verifier()) is not None


def test_optional_admin_bearer_wins_over_cookie():
    good = make_admin_token()
    bad = make_admin_token(role="viewer")
    assert get_optional_admin({"authorization": f"Bearer {bad}"}, {"pm_access_token": good}, _verifier()) is None


@pytest.mark.parametrize(
    "token",
    [
        make_admin_token(role="viewer"),
        make_admin_token(tokenType="refresh"),
        make_admin_token(secret="some-other-secret"),
        make_admin_token(aud="someone-else"),
        make_admin_token(exp=1),
        "not-a-jwt",
    ],
)
def test_optional_admin_rejects_bad_tokens(token):
    assert get_optional_admin({"authorization": f"Bearer {token}"}, {}, _verifier()) is None


def test_optional_admin_swallows_verifier_failures():
    class Boom:
        def verify(self, token):
            raise RuntimeError("backend down")

    assert get_optional_admin({"authorization": "Bearer abc"}, {}, Boom()) is None
    assert get_optional_admin({"authorization": "Bearer abc"}, {}, None) is None
    assert get_optional_admin({"authorization": "Basic abc"}, {}, _verifier()) is None
