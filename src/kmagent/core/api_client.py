"""Async REST client for the KeyMeister directory service."""

from __future__ import annotations

import asyncio
import logging

import httpx
from pydantic import ValidationError

from kmagent.core.exceptions import AgentVersionError, ApiError
from kmagent.schemas.assignment import KeyAssignmentsResponse
from kmagent.schemas.report import AgentReport, AgentReportResponse, VersionErrorResponse

logger = logging.getLogger(__name__)


class KeyMeisterClient:
    """Talks to ``<endpoint>/api`` with a Bearer token."""

    def __init__(
        self,
        endpoint: str,
        token: str,
        agent_version: str = "0.3.0",
        timeout: float = 30.0,
        retry_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = f"{endpoint.rstrip('/')}/api"
        self.token = token
        self.retry_delay = retry_delay
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"User-Agent": f"kmagent/{agent_version}"},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> KeyMeisterClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    @property
    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    async def health_check(self) -> bool:
        """GET /health. Returns False on a non-2xx status, raises ApiError if unreachable."""
        logger.info("Checking API health at: %s/health", self.base_url)
        try:
            response = await self._client.get("/health")
        except httpx.HTTPError as e:
            raise ApiError(f"Health check request failed: {e}") from e

        if response.is_success:
            logger.info("Health check passed")
            return True
        logger.warning("Health check failed with status: %d", response.status_code)
        return False

    async def report_agent_data(self, report: AgentReport) -> AgentReportResponse:
        """POST /agent/report."""
        logger.info("Reporting agent data to: %s/agent/report", self.base_url)
        logger.info("Report contains %d users", len(report.users))
        try:
            response = await self._client.post(
                "/agent/report",
                headers=self._auth_headers,
                json=report.model_dump(by_alias=True, mode="json"),
            )
        except httpx.HTTPError as e:
            raise ApiError(f"Agent report request failed: {e}") from e

        if response.is_success:
            try:
                parsed = AgentReportResponse.model_validate_json(response.text)
            except ValidationError as e:
                raise ApiError(f"Failed to parse successful response: {e}", response.status_code) from e
            logger.info("Agent report successful: %s", parsed.message or "No message")
            if parsed.users_processed is not None:
                logger.info("Users processed: %d", parsed.users_processed)
            return parsed

        if response.status_code == httpx.codes.UPGRADE_REQUIRED:
            try:
                version_error = VersionErrorResponse.model_validate_json(response.text)
            except ValidationError:
                logger.error("Agent version check failed with HTTP 426 but could not parse response")
                raise AgentVersionError("unknown", "unknown", "Agent version too old. Please update the agent.") from None
            logger.error("Agent version too old: %s", version_error.message)
            raise AgentVersionError(version_error.current_version, version_error.minimum_version)

        raise self._error_from_response(response, AgentReportResponse)

    async def get_key_assignments(self) -> KeyAssignmentsResponse:
        """GET /host/keys."""
        logger.info("Fetching key assignments from: %s/host/keys", self.base_url)
        try:
            response = await self._client.get("/host/keys", headers=self._auth_headers)
        except httpx.HTTPError as e:
            raise ApiError(f"Key assignments request failed: {e}") from e

        if not response.is_success:
            raise self._error_from_response(response, KeyAssignmentsResponse)

        try:
            parsed = KeyAssignmentsResponse.model_validate_json(response.text)
        except ValidationError as e:
            raise ApiError(f"Failed to parse key assignments response: {e}", response.status_code) from e
        logger.info("Retrieved %d key assignments", len(parsed.assignments or []))
        return parsed

    async def report_with_retry(self, report: AgentReport, max_retries: int = 3) -> AgentReportResponse:
        """Report with exponential backoff. Version errors are not retried."""
        last_error: ApiError | None = None
        for attempt in range(1, max_retries + 1):
            try:
                return await self.report_agent_data(report)
            except AgentVersionError as e:
                logger.error("Version error detected - not retrying: %s", e)
                raise
            except ApiError as e:
                logger.warning("Report attempt %d failed: %s", attempt, e)
                last_error = e
                if attempt < max_retries:
                    delay = self.retry_delay * 2 ** (attempt - 1)
                    logger.info("Retrying in %.1fs...", delay)
                    await asyncio.sleep(delay)

        raise last_error or ApiError("All retry attempts failed")

    @staticmethod
    def _error_from_response(response: httpx.Response, model) -> ApiError:
        try:
            body = model.model_validate_json(response.text)
        except ValidationError:
            body = None
        if body is not None and body.error:
            logger.error("API error (%d): %s", response.status_code, body.error)
            return ApiError(f"API request failed: {body.error}", response.status_code)
        logger.error("HTTP error (%d): %s", response.status_code, response.text[:200])
        return ApiError(f"HTTP error ({response.status_code}): {response.text[:200]}", response.status_code)
