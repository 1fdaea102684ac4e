"""Tests for the directory-service client (httpx mock transport)."""

import json

import httpx
import pytest

from kmagent.core.api_client import KeyMeisterClient
from kmagent.core.exceptions import AgentVersionError, ApiError
from kmagent.schemas.report import AgentReport, SystemInfo, UserReport

SYSTEM_INFO = SystemInfo(
    os="Linux", arch="x86_64", platform="linux", kernel="6.1.0", distribution="Debian", version="12"
)


def _report() -> AgentReport:
    return AgentReport(
        hostname="web-1",
        system_info=SYSTEM_INFO,
        agent_version="0.3.0",
        users=[UserReport(username="alice", uid=1000, shell="/bin/bash", home_dir="/home/alice")],
    )


def _client(handler, **kwargs) -> KeyMeisterClient:
    return KeyMeisterClient(
        "http://keymeister.test/",
        "secret-token",
        transport=httpx.MockTransport(handler),
        retry_delay=0,
        **kwargs,
    )


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_healthy(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"status": "ok"})

        async with _client(handler) as client:
            assert await client.health_check() is True
        assert seen[0].url == "http://keymeister.test/api/health"
        assert seen[0].headers["user-agent"] == "kmagent/0.3.0"

    @pytest.mark.asyncio
    async def test_unhealthy(self):
        async with _client(lambda request: httpx.Response(503)) as client:
            assert await client.health_check() is False

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        async with _client(handler) as client:
            with pytest.raises(ApiError):
                await client.health_check()


class TestReport:
    @pytest.mark.asyncio
    async def test_report_payload_uses_camel_case(self):
        bodies = []

        def handler(request):
            assert request.headers["authorization"] == "Bearer secret-token"
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True, "hostId": "h-1", "usersProcessed": 1})

        async with _client(handler) as client:
            response = await client.report_agent_data(_report())

        assert response.host_id == "h-1"
        assert response.users_processed == 1
        body = bodies[0]
        assert body["hostname"] == "web-1"
        assert body["agentVersion"] == "0.3.0"
        assert body["systemInfo"]["distribution"] == "Debian"
        assert body["users"][0]["username"] == "alice"

    @pytest.mark.asyncio
    async def test_version_too_old(self):
        def handler(request):
            return httpx.Response(426, json={
                "error": "AGENT_VERSION_TOO_OLD",
                "message": "Please update",
                "minimumVersion": "1.0.0",
                "currentVersion": "0.3.0",
            })

        async with _client(handler) as client:
            with pytest.raises(AgentVersionError) as exc_info:
                await client.report_agent_data(_report())
        assert exc_info.value.minimum_version == "1.0.0"
        assert exc_info.value.status_code == 426

    @pytest.mark.asyncio
    async def test_server_error_message(self):
        def handler(request):
            return httpx.Response(401, json={"success": False, "error": "invalid token"})

        async with _client(handler) as client:
            with pytest.raises(ApiError, match="invalid token") as exc_info:
                await client.report_agent_data(_report())
        assert exc_info.value.status_code == 401


class TestReportWithRetry:
    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(500, text="boom")
            return httpx.Response(200, json={"success": True})

        async with _client(handler) as client:
            response = await client.report_with_retry(_report(), max_retries=3)

        assert response.success is True
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(502, text="bad gateway")

        async with _client(handler) as client:
            with pytest.raises(ApiError, match="502"):
                await client.report_with_retry(_report(), max_retries=2)
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_version_error_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(426, text="not json")

        async with _client(handler) as client:
            with pytest.raises(AgentVersionError):
                await client.report_with_retry(_report(), max_retries=3)
        assert len(attempts) == 1


class TestKeyAssignments:
    @pytest.mark.asyncio
    async def test_parses_assignments(self):
        def handler(request):
            assert request.url.path == "/api/host/keys"
            return httpx.Response(200, json={
                "success": True,
                "hostId": "h-1",
                "assignments": [{
                    "username": "alice",
                    "fingerprint": "SHA256:abc",
                    "publicKey": "ssh-ed25519 AAAA alice@laptop",
                    "keyType": "ssh-ed25519",
                    "comment": "alice@laptop",
                    "usePrimaryKey": True,
                    "assignmentId": "asg-1",
                }],
            })

        async with _client(handler) as client:
            response = await client.get_key_assignments()

        (assignment,) = response.assignments
        assert assignment.public_key == "ssh-ed25519 AAAA alice@laptop"
        assert assignment.key_type == "ssh-ed25519"
        assert assignment.assignment_id == "asg-1"
        assert assignment.use_primary_key is True

    @pytest.mark.asyncio
    async def test_malformed_body(self):
        async with _client(lambda request: httpx.Response(200, json={"assignments": "nope"})) as client:
            with pytest.raises(ApiError, match="parse"):
                await client.get_key_assignments()

    @pytest.mark.asyncio
    async def test_http_error(self):
        async with _client(lambda request: httpx.Response(404, text="not found")) as client:
            with pytest.raises(ApiError, match="404"):
                await client.get_key_assignments()
