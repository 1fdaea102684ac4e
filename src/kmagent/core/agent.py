"""One agent invocation: report host facts, fetch assignments, reconcile keys."""

from __future__ import annotations

import logging

from kmagent.config import Settings
from kmagent.core.api_client import KeyMeisterClient
from kmagent.core.exceptions import ApiError
from kmagent.core.key_store import KeyFileStore, PrivilegeContext
from kmagent.core.locator import AuthorizedKeysLocator
from kmagent.core.reconciler import KeySyncStats, ReconciliationEngine
from kmagent.core.system import collect_hostname, collect_system_info
from kmagent.core.users import collect_users
from kmagent.schemas.report import AgentReport, UserReport

logger = logging.getLogger(__name__)


async def run_agent_cycle(
    client: KeyMeisterClient,
    engine: ReconciliationEngine,
    config: Settings,
    dry_run: bool = False,
) -> KeySyncStats:
    """Run a full report-and-sync cycle.

    A failed health check is only logged. Failing to enumerate users, to
    send the report or to fetch assignments aborts the cycle.
    """
    try:
        if not await client.health_check():
            logger.warning("API health check failed, but continuing...")
    except ApiError as e:
        logger.warning("Health check error: %s, continuing anyway...", e)

    users = collect_users(
        config.passwd_path,
        min_uid=config.min_uid,
        include=config.include_users,
        exclude=config.exclude_users,
    )
    hostname = collect_hostname()
    system_info = collect_system_info()
    logger.info("Collected system data: hostname=%s os=%s %s (%s) users=%d",
                hostname, system_info.distribution, system_info.version,
                system_info.arch, len(users))

    report = AgentReport(
        hostname=hostname,
        system_info=system_info,
        agent_version=config.agent_version,
        users=[UserReport.model_validate(user) for user in users],
    )
    response = await client.report_with_retry(report, max_retries=config.report_retries)
    if response.host_id:
        logger.info("Host ID: %s", response.host_id)

    key_response = await client.get_key_assignments()
    if not key_response.success:
        raise ApiError(f"Key assignments request failed: {key_response.error or 'unknown error'}")
    assignments = key_response.assignments or []
    logger.info("Retrieved %d SSH key assignments", len(assignments))

    return engine.sync(users, assignments, dry_run=dry_run)


def build_engine(config: Settings, privilege: PrivilegeContext | None = None) -> ReconciliationEngine:
    """Engine wired to the real filesystem store and the configured sshd config paths."""
    return ReconciliationEngine(
        AuthorizedKeysLocator(config.sshd_config_paths),
        KeyFileStore(privilege),
    )
