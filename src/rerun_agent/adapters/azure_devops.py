"""
Azure DevOps build adapters.

Reads a pipeline run through the Build REST API and reruns its failed jobs
with `PATCH build/builds/{id}?retry=true`, the same operation as the
"Rerun failed jobs" button on the run page.

Error handling:
- Transient failures (network, 429, 5xx) are retried briefly with
  HTTP_RETRY_POLICY inside a single call.
- Anything still failing surfaces as AzureDevOpsError from the client and
  is degraded at the adapter boundary: the oracle answers UNKNOWN, the
  trigger answers False. Nothing escapes into the controller loop.
"""

import time
from typing import Any, Dict, Optional

import httpx

from rerun_agent.config import AzureDevOpsConfig, ConfigurationError, SecretsManager
from rerun_agent.logging import get_logger
from rerun_agent.resilience import HTTP_RETRY_POLICY, RetryExhaustedError, RetryPolicy, retry_sync_with_backoff
from rerun_agent.state import JobStatus

logger = get_logger(__name__)

ACTIVE_STATES = {"notstarted", "inprogress", "cancelling", "postponed"}
FAILED_RESULTS = {"failed", "partiallysucceeded", "canceled"}


class AzureDevOpsError(Exception):
    """Raised when an Azure DevOps request fails."""

    def __init__(self, message: str, status_code: Optional[int] = None, error_type: str = "unknown"):
        self.message = message
        self.status_code = status_code
        self.error_type = error_type  # network, auth, not_found, rate_limit, server, validation
        super().__init__(f"AzureDevOpsError[{error_type}]: {status_code} - {message}")

    @property
    def transient(self) -> bool:
        return self.error_type in ("network", "rate_limit", "server")


class TransientAzureDevOpsError(AzureDevOpsError):
    """An AzureDevOpsError worth retrying; retry_after is the server's hint in seconds."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_type: str = "unknown",
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code, error_type)
        self.retry_after = retry_after


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def classify_status_code(status_code: Optional[int]) -> str:
    """Classify an HTTP status code into an error type."""
    if status_code is None:
        return "network"
    if status_code in (401, 403):
        return "auth"
    if status_code == 404:
        return "not_found"
    if status_code == 429:
        return "rate_limit"
    if 400 <= status_code < 500:
        return "validation"
    if 500 <= status_code < 600:
        return "server"
    return "unknown"


def classify_build(build: Dict[str, Any]) -> JobStatus:
    """
    Map a build record to a JobStatus.

    Comparison is case-insensitive; the API returns camelCase literals such
    as "inProgress" and "partiallySucceeded".
    """
    state = str(build.get("status") or "").lower()
    result = str(build.get("result") or "").lower()

    if state in ACTIVE_STATES:
        return JobStatus.ACTIVE
    if state == "completed":
        if result == "succeeded":
            return JobStatus.SUCCESS
        if result in FAILED_RESULTS:
            return JobStatus.FAILED
    return JobStatus.UNKNOWN


class AzureDevOpsClient:
    """Synchronous Build REST API client for one organization/project."""

    def __init__(
        self,
        organization: str,
        project: str,
        token: str,
        base_url: str = "https://dev.azure.com",
        api_version: str = "7.1",
        timeout_seconds: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.organization = organization
        self.project = project
        self.api_version = api_version
        self.retry_policy = retry_policy or HTTP_RETRY_POLICY.with_retryable(TransientAzureDevOpsError)
        self._closed = False
        self._client = httpx.Client(
            base_url=f"{base_url.rstrip('/')}/{organization}/{project}/_apis",
            auth=("", token),
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Accept": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: AzureDevOpsConfig, **kwargs: Any) -> "AzureDevOpsClient":
        """Create a client from config, reading the token from the environment."""
        missing = [name for name in ("organization", "project") if not getattr(config, name)]
        if missing:
            raise ConfigurationError(
                f"Azure DevOps {missing[0]} is not configured",
                field=f"azure_devops.{missing[0]}",
                suggestions=[
                    "Pass --organization/--project on the command line",
                    "Or set AZURE_DEVOPS_ORG / AZURE_DEVOPS_PROJECT",
                ],
            )
        return cls(
            organization=config.organization,
            project=config.project,
            token=SecretsManager.get_azure_devops_token(config.token_env),
            base_url=config.base_url,
            api_version=config.api_version,
            timeout_seconds=config.request_timeout_seconds,
            **kwargs,
        )

    def close(self) -> None:
        """Close the underlying connection pool."""
        if self._closed:
            return
        self._client.close()
        self._closed = True

    def _send(self, method: str, path: str, op: str, params: Dict[str, Any], json_body: Any) -> Any:
        if self._closed:
            raise RuntimeError("AzureDevOpsClient is already closed")

        started = time.perf_counter()
        try:
            response = self._client.request(method, path, params=params, json=json_body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            error_type = classify_status_code(status_code)
            message = e.response.text[:200] or str(e)
            if error_type in ("rate_limit", "server"):
                raise TransientAzureDevOpsError(
                    message, status_code, error_type,
                    retry_after=parse_retry_after(e.response.headers.get("Retry-After")),
                ) from e
            raise AzureDevOpsError(message, status_code, error_type) from e
        except httpx.TransportError as e:
            raise TransientAzureDevOpsError(str(e) or type(e).__name__, None, "network") from e

        logger.debug(
            "Azure DevOps request",
            op=op,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise AzureDevOpsError("Response body is not JSON", response.status_code, "validation") from e

    def _request(self, method: str, path: str, op: str, params: Optional[Dict[str, Any]] = None, json_body: Any = None) -> Any:
        """Send a request with transient-error retries."""
        query = {"api-version": self.api_version}
        if params:
            query.update(params)
        try:
            return retry_sync_with_backoff(
                self._send, method, path, op, query, json_body,
                policy=self.retry_policy,
            )
        except RetryExhaustedError as e:
            last = e.last_error
            if isinstance(last, AzureDevOpsError):
                raise AzureDevOpsError(last.message, last.status_code, last.error_type) from e
            raise AzureDevOpsError(str(e)) from e

    def get_build(self, build_id: int) -> Dict[str, Any]:
        """Fetch a build record."""
        return self._request("GET", f"/build/builds/{build_id}", op="build.get")

    def retry_build(self, build_id: int) -> Dict[str, Any]:
        """Rerun the failed jobs of a completed build."""
        return self._request(
            "PATCH", f"/build/builds/{build_id}", op="build.retry",
            params={"retry": "true"}, json_body={},
        )


class AzureDevOpsStatusOracle:
    """Status oracle backed by the Build REST API."""

    def __init__(self, client: AzureDevOpsClient, build_id: int):
        self.client = client
        self.build_id = build_id

    def status(self) -> JobStatus:
        try:
            build = self.client.get_build(self.build_id)
        except AzureDevOpsError as e:
            logger.warning(
                "Unable to read build status",
                build_id=self.build_id,
                error_type=e.error_type,
                status_code=e.status_code,
            )
            return JobStatus.UNKNOWN

        status = classify_build(build)
        if status == JobStatus.UNKNOWN:
            logger.warning(
                "Unrecognized build state",
                build_id=self.build_id,
                state=build.get("status"),
                result=build.get("result"),
            )
        return status


class AzureDevOpsRetryTrigger:
    """
    Reruns failed jobs of a build.

    try_trigger() submits the retry; try_confirm() re-reads the build and
    succeeds once it shows the rerun was accepted: the build left the
    "completed" state or its lastChangedDate moved past the value seen when
    the retry was submitted.
    """

    def __init__(self, client: AzureDevOpsClient, build_id: int):
        self.client = client
        self.build_id = build_id
        self._changed_before: Optional[str] = None

    def try_trigger(self) -> bool:
        try:
            before = self.client.get_build(self.build_id)
            self._changed_before = before.get("lastChangedDate")
            self.client.retry_build(self.build_id)
        except AzureDevOpsError as e:
            logger.warning(
                "Unable to submit build retry",
                build_id=self.build_id,
                error_type=e.error_type,
                status_code=e.status_code,
            )
            return False

        logger.info("Build retry submitted", build_id=self.build_id)
        return True

    def try_confirm(self) -> bool:
        try:
            build = self.client.get_build(self.build_id)
        except AzureDevOpsError as e:
            logger.warning(
                "Unable to confirm build retry",
                build_id=self.build_id,
                error_type=e.error_type,
            )
            return False

        state = str(build.get("status") or "").lower()
        if state != "completed":
            return True

        changed = build.get("lastChangedDate")
        return bool(changed) and changed != self._changed_before
