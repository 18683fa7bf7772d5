"""
Tests for the Azure DevOps adapters, driven through httpx.MockTransport.
"""

import base64
import json

import httpx
import pytest

from rerun_agent.adapters.azure_devops import (
    AzureDevOpsClient,
    AzureDevOpsError,
    AzureDevOpsRetryTrigger,
    AzureDevOpsStatusOracle,
    TransientAzureDevOpsError,
    classify_build,
    classify_status_code,
    parse_retry_after,
)
from rerun_agent.config import AzureDevOpsConfig, ConfigurationError
from rerun_agent.resilience import RetryPolicy
from rerun_agent.state import JobStatus

NO_WAIT = RetryPolicy(max_retries=2, initial_delay=0, jitter=0, retryable_exceptions=(TransientAzureDevOpsError,))


def build(status="completed", result="failed", changed="2024-05-01T10:00:00Z"):
    return {"id": 42, "status": status, "result": result, "lastChangedDate": changed}


class FakeServer:
    """Serves scripted responses and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, httpx.Response):
            return item
        return httpx.Response(200, json=item)


def make_client(server: FakeServer, **kwargs) -> AzureDevOpsClient:
    return AzureDevOpsClient(
        organization="contoso",
        project="web",
        token="pat-token",
        retry_policy=NO_WAIT,
        transport=httpx.MockTransport(server),
        **kwargs,
    )


class TestClassification:
    """Tests for status mapping."""

    @pytest.mark.parametrize("state", ["notStarted", "inProgress", "cancelling", "postponed"])
    def test_active_states(self, state):
        assert classify_build(build(status=state, result=None)) == JobStatus.ACTIVE

    def test_succeeded(self):
        assert classify_build(build(result="succeeded")) == JobStatus.SUCCESS

    @pytest.mark.parametrize("result", ["failed", "partiallySucceeded", "canceled"])
    def test_failed_results(self, result):
        assert classify_build(build(result=result)) == JobStatus.FAILED

    def test_unknown(self):
        assert classify_build({}) == JobStatus.UNKNOWN
        assert classify_build(build(result="none")) == JobStatus.UNKNOWN

    def test_status_codes(self):
        assert classify_status_code(None) == "network"
        assert classify_status_code(401) == "auth"
        assert classify_status_code(404) == "not_found"
        assert classify_status_code(429) == "rate_limit"
        assert classify_status_code(400) == "validation"
        assert classify_status_code(503) == "server"


class TestClient:
    """Tests for AzureDevOpsClient."""

    def test_get_build_request(self):
        server = FakeServer(build())
        client = make_client(server)

        assert client.get_build(42)["id"] == 42

        request = server.requests[0]
        assert request.method == "GET"
        assert request.url.path == "/contoso/web/_apis/build/builds/42"
        assert request.url.params["api-version"] == "7.1"
        expected = base64.b64encode(b":pat-token").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"

    def test_retry_build_request(self):
        server = FakeServer(build(status="inProgress", result=None))
        client = make_client(server)

        client.retry_build(42)

        request = server.requests[0]
        assert request.method == "PATCH"
        assert request.url.params["retry"] == "true"
        assert json.loads(request.content) == {}

    def test_transient_error_retried(self):
        server = FakeServer(httpx.Response(503), httpx.Response(500), build())
        client = make_client(server)

        assert client.get_build(42)["status"] == "completed"
        assert len(server.requests) == 3

    def test_transient_error_exhausted(self):
        server = FakeServer(httpx.Response(503, text="unavailable"))
        client = make_client(server)

        with pytest.raises(AzureDevOpsError) as exc_info:
            client.get_build(42)

        assert exc_info.value.error_type == "server"
        assert exc_info.value.transient is True
        assert len(server.requests) == 3

    def test_rate_limit_honours_retry_after(self):
        server = FakeServer(httpx.Response(429, headers={"Retry-After": "0"}), build())
        client = make_client(server)

        assert client.get_build(42)["id"] == 42
        assert len(server.requests) == 2

    def test_parse_retry_after(self):
        assert parse_retry_after("3") == 3.0
        assert parse_retry_after(None) is None
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None

    def test_not_found_not_retried(self):
        server = FakeServer(httpx.Response(404, text="no such build"))
        client = make_client(server)

        with pytest.raises(AzureDevOpsError) as exc_info:
            client.get_build(42)

        assert exc_info.value.error_type == "not_found"
        assert exc_info.value.status_code == 404
        assert len(server.requests) == 1

    def test_network_error(self):
        server = FakeServer(httpx.ConnectError("connection refused"))
        client = make_client(server)

        with pytest.raises(AzureDevOpsError) as exc_info:
            client.get_build(42)

        assert exc_info.value.error_type == "network"

    def test_non_json_body(self):
        server = FakeServer(httpx.Response(200, text="<html>sign in</html>"))
        client = make_client(server)

        with pytest.raises(AzureDevOpsError) as exc_info:
            client.get_build(42)

        assert exc_info.value.error_type == "validation"

    def test_closed_client(self):
        client = make_client(FakeServer(build()))
        client.close()
        client.close()

        with pytest.raises(RuntimeError):
            client.get_build(42)

    def test_from_config_requires_project(self, monkeypatch):
        monkeypatch.setenv("AZURE_DEVOPS_TOKEN", "pat")

        with pytest.raises(ConfigurationError) as exc_info:
            AzureDevOpsClient.from_config(AzureDevOpsConfig(organization="contoso"))

        assert exc_info.value.field == "azure_devops.project"

    def test_from_config_requires_token(self, monkeypatch):
        monkeypatch.delenv("AZURE_DEVOPS_TOKEN", raising=False)

        with pytest.raises(ConfigurationError):
            AzureDevOpsClient.from_config(AzureDevOpsConfig(organization="contoso", project="web"))

    def test_from_config(self, monkeypatch):
        monkeypatch.setenv("AZURE_DEVOPS_TOKEN", "pat")

        client = AzureDevOpsClient.from_config(
            AzureDevOpsConfig(organization="contoso", project="web", api_version="7.0"),
            transport=httpx.MockTransport(FakeServer(build())),
        )

        assert client.organization == "contoso"
        assert client.api_version == "7.0"
        client.close()


class TestStatusOracle:
    def test_maps_build(self):
        oracle = AzureDevOpsStatusOracle(make_client(FakeServer(build(result="succeeded"))), 42)
        assert oracle.status() == JobStatus.SUCCESS

    def test_error_is_unknown(self):
        oracle = AzureDevOpsStatusOracle(make_client(FakeServer(httpx.Response(401))), 42)
        assert oracle.status() == JobStatus.UNKNOWN


class TestRetryTrigger:
    """Tests for the rerun trigger and its confirmation."""

    def test_trigger_submits_retry(self):
        server = FakeServer(build(), build(status="inProgress", result=None))
        trigger = AzureDevOpsRetryTrigger(make_client(server), 42)

        assert trigger.try_trigger() is True
        assert [r.method for r in server.requests] == ["GET", "PATCH"]

    def test_trigger_failure(self):
        server = FakeServer(build(), httpx.Response(403, text="forbidden"))
        trigger = AzureDevOpsRetryTrigger(make_client(server), 42)

        assert trigger.try_trigger() is False

    def test_confirm_when_running(self):
        server = FakeServer(build(), {}, build(status="inProgress", result=None))
        trigger = AzureDevOpsRetryTrigger(make_client(server), 42)

        trigger.try_trigger()
        assert trigger.try_confirm() is True

    def test_confirm_when_unchanged(self):
        server = FakeServer(build(), {}, build())
        trigger = AzureDevOpsRetryTrigger(make_client(server), 42)

        trigger.try_trigger()
        assert trigger.try_confirm() is False

    def test_confirm_when_changed(self):
        server = FakeServer(build(), {}, build(changed="2024-05-01T10:05:00Z"))
        trigger = AzureDevOpsRetryTrigger(make_client(server), 42)

        trigger.try_trigger()
        assert trigger.try_confirm() is True

    def test_confirm_error(self):
        server = FakeServer(httpx.Response(500))
        trigger = AzureDevOpsRetryTrigger(make_client(server), 42)

        assert trigger.try_confirm() is False
