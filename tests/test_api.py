from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

import settings as settings_module
from adapters.json_config_provider import JsonConfigProvider
from api import Services, create_app
from app import build_services
from core.auth import TokenValidator, generate_token
from core.config import ChannelConfig, RateLimitConfig
from core.dedup import InMemoryDeduplicationStore
from core.dispatcher import ChannelDispatcher, ChannelRegistry
from core.health import HealthAggregator, RequestMetrics
from core.models import HealthCheckResult, HealthStatus, NotificationEvent
from core.processor import NotificationProcessor
from core.rate_limit import SlidingWindowRateLimiter
from core.rules_engine import RuleEvaluator

SECRET = "api-test-secret-with-enough-length"
RAW_CONFIG = {
    "version": "3.1.0",
    "rate_limit": {"limit": 100, "window_ms": 60000},
    "deduplication": {"backend": "memory"},
    "defaults": {"channels": [{"id": "fallback", "kind": "fake"}]},
    "organizations": {
        "acme": {
            "version": "7",
            "last_optimized": "2024-02-01T00:00:00Z",
            "channels": [
                {"id": "chat", "kind": "fake"},
                {"id": "muted", "kind": "fake", "enabled": False},
                {"id": "pager", "kind": "fake"},
            ],
        }
    },
    "admin_channels": [{"id": "admin", "kind": "fake"}],
}


class FakeChannel:
    def __init__(self) -> None:
        self.sent: list[tuple[NotificationEvent, ChannelConfig]] = []

    async def send(self, event: NotificationEvent, channel: ChannelConfig) -> None:
        self.sent.append((event, channel))


class FakeProbe:
    def __init__(self, name: str, status: HealthStatus, critical: bool) -> None:
        self.name = name
        self.status = status
        self.critical = critical

    async def check(self) -> HealthCheckResult:
        return HealthCheckResult(self.name, self.status, self.critical)


class BrokenProvider:
    def get_organization_config(self, organization_id: str):
        raise RuntimeError("config store unreachable")


def _auth(org: str = "acme") -> dict[str, str]:
    return {"Authorization": f"Bearer {generate_token(SECRET, org, 'ci')}"}


def _services(
    channel: FakeChannel,
    *,
    provider=None,
    limit: int = 100,
    probes=(),
) -> Services:
    validator = TokenValidator(SECRET, {"beta": "beta-static-key"})
    provider = provider or JsonConfigProvider(RAW_CONFIG)
    dispatcher = ChannelDispatcher(
        ChannelRegistry({"fake": channel}),
        admin_channels=[ChannelConfig("admin", "fake", True, "")],
    )
    processor = NotificationProcessor(
        validator=validator,
        rate_limiter=SlidingWindowRateLimiter(),
        config_provider=provider,
        evaluator=RuleEvaluator(InMemoryDeduplicationStore()),
        dispatcher=dispatcher,
        rate_limit=RateLimitConfig(limit=limit, window_ms=60_000),
    )
    return Services(
        processor=processor,
        health=HealthAggregator(list(probes), version="1.2.3"),
        validator=validator,
        metrics=RequestMetrics(),
        version="1.2.3",
    )


def _body(**overrides) -> dict:
    body = {"status": "success", "message": "Deploy finished", "repository": "acme/api", "branch": "main"}
    body.update(overrides)
    return body


def test_notify_delivers_to_enabled_channels() -> None:
    channel = FakeChannel()
    with TestClient(create_app(_services(channel))) as client:
        response = client.post("/notify", json=_body(), headers=_auth())

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["message"] == "Notification processed"
    data = payload["data"]
    assert data["notified"] is True
    assert data["channels"] == [{"channel": "chat", "success": True}, {"channel": "pager", "success": True}]
    assert data["config"] == {"version": "7", "lastOptimized": "2024-02-01T00:00:00Z"}
    assert data["requestId"]
    assert sorted(c.channel_id for _, c in channel.sent) == ["chat", "pager"]


def test_duplicate_success_is_suppressed() -> None:
    channel = FakeChannel()
    with TestClient(create_app(_services(channel))) as client:
        first = client.post("/notify", json=_body(), headers=_auth())
        second = client.post("/notify", json=_body(message="deploy   FINISHED"), headers=_auth())

    assert first.json()["data"]["notified"] is True
    assert second.status_code == 200
    assert second.json()["data"]["notified"] is False
    assert second.json()["data"]["channels"] == []
    assert len(channel.sent) == 2


def test_repeated_errors_are_always_delivered() -> None:
    channel = FakeChannel()
    with TestClient(create_app(_services(channel))) as client:
        for _ in range(2):
            response = client.post("/notify", json=_body(status="error"), headers=_auth())
            assert response.json()["data"]["notified"] is True
    assert len(channel.sent) == 4


def test_static_key_routes_to_default_channels() -> None:
    channel = FakeChannel()
    with TestClient(create_app(_services(channel))) as client:
        response = client.post(
            "/notify", json=_body(), headers={"Authorization": "Bearer beta-static-key"}
        )

    assert response.json()["data"]["channels"] == [{"channel": "fallback", "success": True}]


@pytest.mark.parametrize(
    "body, message",
    [
        ({"status": "success"}, "Missing required fields: status, message"),
        ({"status": "done", "message": "x"}, "Invalid status. Must be: success, error, warning, info"),
        ({"status": "info", "message": "x", "context": "nope"}, "Field 'context' must be an object"),
    ],
)
def test_invalid_body_returns_400(body: dict, message: str) -> None:
    with TestClient(create_app(_services(FakeChannel()))) as client:
        response = client.post("/notify", json=body, headers=_auth())

    assert response.status_code == 400
    assert response.json() == {"error": "Bad Request", "message": message}


def test_non_json_body_returns_400() -> None:
    with TestClient(create_app(_services(FakeChannel()))) as client:
        response = client.post("/notify", content=b"not json", headers=_auth())
    assert response.status_code == 400


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Basic abc"}, {"Authorization": "Bearer wrong"}])
def test_missing_or_bad_credentials_return_401(headers: dict) -> None:
    channel = FakeChannel()
    with TestClient(create_app(_services(channel))) as client:
        response = client.post("/notify", json=_body(), headers=headers)

    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized", "message": "Invalid or missing authentication token"}
    assert channel.sent == []


def test_auth_is_checked_before_body() -> None:
    with TestClient(create_app(_services(FakeChannel()))) as client:
        response = client.post("/notify", json={"status": "success"})
    assert response.status_code == 401


def test_rate_limit_returns_429() -> None:
    with TestClient(create_app(_services(FakeChannel(), limit=1))) as client:
        assert client.post("/notify", json=_body(), headers=_auth()).status_code == 200
        response = client.post("/notify", json=_body(status="info"), headers=_auth())

    assert response.status_code == 429
    assert response.json()["error"] == "Too Many Requests"
    assert response.json()["resetTime"] > 0
    assert int(response.headers["Retry-After"]) >= 1


@pytest.mark.parametrize(
    "method, path, allowed",
    [("GET", "/notify", ["POST"]), ("DELETE", "/health", ["GET", "POST"]), ("PUT", "/notify", ["POST"])],
)
def test_unsupported_methods_return_405(method: str, path: str, allowed: list) -> None:
    with TestClient(create_app(_services(FakeChannel()))) as client:
        response = client.request(method, path)

    assert response.status_code == 405
    assert response.json() == {"error": "Method not allowed", "allowed": allowed}


def test_internal_error_returns_500_and_alerts_admins() -> None:
    channel = FakeChannel()
    services = _services(channel, provider=BrokenProvider())
    with TestClient(create_app(services)) as client:
        response = client.post("/notify", json=_body(), headers=_auth())

    assert response.status_code == 500
    payload = response.json()
    assert payload["success"] is False
    assert payload["error"] == "Internal Server Error"
    assert [c.channel_id for _, c in channel.sent] == ["admin"]
    notice, _ = channel.sent[0]
    assert "config store unreachable" in notice.message
    assert notice.metadata.request_id == payload["requestId"]
    assert services.metrics.snapshot()["notify"]["errors"] == 1


def test_health_reports_healthy_with_optional_auth() -> None:
    probes = [FakeProbe("configuration", HealthStatus.HEALTHY, True)]
    with TestClient(create_app(_services(FakeChannel(), probes=probes))) as client:
        anonymous = client.get("/health")
        authenticated = client.post("/health", headers=_auth())

    assert anonymous.status_code == 200
    body = anonymous.json()
    assert body["status"] == "healthy"
    assert body["version"] == "1.2.3"
    assert body["checks"]["configuration"]["critical"] is True
    assert "org" not in body
    assert authenticated.json()["authenticated"] is True
    assert authenticated.json()["org"] == "acme"


def test_health_degraded_is_still_200() -> None:
    probes = [
        FakeProbe("configuration", HealthStatus.HEALTHY, True),
        FakeProbe("channels", HealthStatus.UNHEALTHY, False),
    ]
    with TestClient(create_app(_services(FakeChannel(), probes=probes))) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "degraded"


def test_health_unhealthy_returns_503() -> None:
    probes = [FakeProbe("deduplication_store", HealthStatus.UNHEALTHY, True)]
    with TestClient(create_app(_services(FakeChannel(), probes=probes))) as client:
        response = client.get("/health", headers={"Authorization": "Bearer wrong"})

    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"
    assert "authenticated" not in response.json()


def test_build_services_wires_the_full_pipeline(monkeypatch) -> None:
    monkeypatch.setenv("JWT_SECRET", SECRET)
    monkeypatch.setenv("API_KEYS", "beta:beta-static-key")
    monkeypatch.delenv("BEACON_VERSION", raising=False)
    monkeypatch.delenv("BOT_API", raising=False)

    settings = settings_module.load_settings(raw=RAW_CONFIG)
    assert settings.config_path is None
    assert [c.channel_id for c in settings.admin_channels] == ["admin"]

    channel = FakeChannel()
    services = build_services(settings, registry=ChannelRegistry({"fake": channel}))

    with TestClient(create_app(services)) as client:
        notify = client.post("/notify", json=_body(), headers=_auth())
        health = client.get("/health")

    assert notify.status_code == 200
    assert len(notify.json()["data"]["channels"]) == 2
    assert health.status_code == 200
    assert health.json()["version"] == "3.1.0"
    assert set(health.json()["checks"]) == {
        "configuration",
        "deduplication_store",
        "channels",
        "requests",
        "rate_limiter",
    }
    assert health.json()["status"] == "healthy"
