"""Integration tests for a full report-and-sync cycle against a fake directory service."""

import json
from pathlib import Path

import httpx
import pytest

from kmagent.config import Settings
from kmagent.core.agent import build_engine, run_agent_cycle
from kmagent.core.api_client import KeyMeisterClient
from kmagent.core.exceptions import AgentVersionError, ApiError, UserEnumerationError
from kmagent.core.key_store import MANAGED_MARKER, PrivilegeContext
from kmagent.core.ssh_key import SshKey


class FakeDirectoryService:
    """Answers the three agent endpoints and records what it was sent."""

    def __init__(self, assignments=None, report_status=200, healthy=True):
        self.assignments = assignments or []
        self.report_status = report_status
        self.healthy = healthy
        self.reports = []
        self.paths = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.paths.append(request.url.path)
        if request.url.path == "/api/health":
            return httpx.Response(200 if self.healthy else 503)
        if request.url.path == "/api/agent/report":
            self.reports.append(json.loads(request.content))
            if self.report_status != 200:
                return httpx.Response(self.report_status, json={"error": "rejected"})
            return httpx.Response(200, json={"success": True, "hostId": "host-1", "usersProcessed": 2})
        if request.url.path == "/api/host/keys":
            return httpx.Response(200, json={"success": True, "hostId": "host-1", "assignments": self.assignments})
        return httpx.Response(404)


def _wire(assignment) -> dict:
    return assignment.model_dump(by_alias=True)


@pytest.fixture
def config(passwd_file: Path, no_sshd_config: list[str]) -> Settings:
    return Settings(
        token="secret",
        passwd_path=str(passwd_file),
        sshd_config_paths=no_sshd_config,
        report_retries=2,
        retry_delay=0,
    )


def _client(service: FakeDirectoryService) -> KeyMeisterClient:
    return KeyMeisterClient(
        "http://keymeister.test", "secret", retry_delay=0, transport=httpx.MockTransport(service)
    )


class TestAgentCycle:
    @pytest.mark.asyncio
    async def test_report_then_sync(self, config, engine, home_root, key_line, assignment):
        alice_key = key_line("alice", comment="alice@laptop")
        service = FakeDirectoryService(assignments=[_wire(assignment("alice", alice_key))])

        async with _client(service) as client:
            stats = await run_agent_cycle(client, engine, config)

        assert service.paths == ["/api/health", "/api/agent/report", "/api/host/keys"]
        report = service.reports[0]
        assert report["agentVersion"] == config.agent_version
        assert [u["username"] for u in report["users"]] == ["alice", "bob"]
        assert report["users"][1]["disabled"] is True
        assert set(report["systemInfo"]) >= {"os", "arch", "platform", "kernel", "distribution", "version"}

        assert stats.users_processed == 2
        assert stats.keys_added == 1
        assert stats.files_updated == 1
        content = (home_root / "alice" / ".ssh" / "authorized_keys").read_text()
        assert content.startswith(MANAGED_MARKER)
        assert alice_key in content
        assert not (home_root / "bob" / ".ssh").exists()

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, config, engine, home_root, key_line, assignment):
        service = FakeDirectoryService(assignments=[_wire(assignment("bob", key_line("bob")))])

        async with _client(service) as client:
            stats = await run_agent_cycle(client, engine, config, dry_run=True)

        assert stats.files_updated == 1
        assert stats.keys_added == 1
        assert not (home_root / "bob" / ".ssh").exists()

    @pytest.mark.asyncio
    async def test_unhealthy_service_still_reports(self, config, engine):
        service = FakeDirectoryService(healthy=False)

        async with _client(service) as client:
            stats = await run_agent_cycle(client, engine, config)

        assert len(service.reports) == 1
        assert stats.errors == 0

    @pytest.mark.asyncio
    async def test_report_failure_aborts_before_sync(self, config, engine, home_root, key_line, assignment):
        service = FakeDirectoryService(
            assignments=[_wire(assignment("alice", key_line("alice")))], report_status=500
        )

        async with _client(service) as client:
            with pytest.raises(ApiError):
                await run_agent_cycle(client, engine, config)

        assert len(service.reports) == config.report_retries
        assert "/api/host/keys" not in service.paths
        assert not (home_root / "alice" / ".ssh").exists()

    @pytest.mark.asyncio
    async def test_version_error_propagates(self, config, engine):
        service = FakeDirectoryService(report_status=426)

        async with _client(service) as client:
            with pytest.raises(AgentVersionError):
                await run_agent_cycle(client, engine, config)

        assert len(service.reports) == 1

    @pytest.mark.asyncio
    async def test_missing_passwd_aborts(self, config, engine, tmp_path):
        config.passwd_path = str(tmp_path / "no-passwd")
        service = FakeDirectoryService()

        async with _client(service) as client:
            with pytest.raises(UserEnumerationError):
                await run_agent_cycle(client, engine, config)

        assert service.reports == []

    @pytest.mark.asyncio
    async def test_unsuccessful_assignment_response(self, config, engine):
        def handler(request):
            if request.url.path == "/api/host/keys":
                return httpx.Response(200, json={"success": False, "error": "host not registered"})
            return FakeDirectoryService()(request)

        async with KeyMeisterClient(
            "http://keymeister.test", "secret", transport=httpx.MockTransport(handler)
        ) as client:
            with pytest.raises(ApiError, match="host not registered"):
                await run_agent_cycle(client, engine, config)


class TestBuildEngine:
    def test_uses_configured_sshd_paths(self, config, make_user, key_line, assignment):
        engine = build_engine(config, PrivilegeContext(uid=1000, is_root=False))
        alice = make_user("alice")

        stats = engine.sync([alice], [assignment("alice", key_line("a"))])

        assert stats.files_updated == 1
        path = Path(alice.home_dir) / ".ssh" / "authorized_keys"
        keys = [SshKey.parse(line) for line in path.read_text().splitlines() if line.startswith("ssh-")]
        assert [k.fingerprint for k in keys] == [SshKey.parse(key_line("a")).fingerprint]
