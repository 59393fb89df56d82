"""Tests for the Graph/ARM HTTP client: tokens, paging, error mapping, retry."""
import json
import time
from types import SimpleNamespace

import jwt
import pytest
import requests

from crossadmin.core.azure import client as client_module
from crossadmin.core.azure.client import ArmClient, GraphClient, create_clients, odata_quote
from crossadmin.core.azure.exceptions import (
    AzureAPIError,
    InsufficientPermissionsError,
    TransientAPIError,
)
from crossadmin.config.settings import ProvisioningConfig

SIGNING_KEY = "unit-test-signing-key-0123456789abcdef"


class _StubResponse:
    def __init__(self, payload=None, status_code=200, headers=None, url="https://graph.microsoft.com/v1.0/x"):
        self._payload = payload
        self.status_code = status_code
        self.headers = headers or {}
        self.url = url
        self.text = json.dumps(payload) if payload is not None else ""
        self.content = self.text.encode("utf-8")

    def json(self):
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


class _Credential:
    def __init__(self, claims=None, expires_in=3600):
        self.calls = 0
        self.claims = claims or {"oid": "00000000-0000-0000-0000-0000000000aa", "tid": "tenant", "upn": "op@contoso.com"}
        self.expires_in = expires_in

    def get_token(self, scope):
        self.calls += 1
        token = jwt.encode(self.claims, SIGNING_KEY, algorithm="HS256")
        return SimpleNamespace(token=token, expires_on=int(time.time()) + self.expires_in)


@pytest.fixture
def sent(monkeypatch):
    """Queue responses for requests.request and record every call."""
    calls = []
    queue = []

    def fake_request(method, url, **kwargs):
        calls.append(SimpleNamespace(method=method, url=url, **kwargs))
        response = queue.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(requests, "request", fake_request)
    monkeypatch.setattr(client_module.time, "sleep", lambda seconds: None)
    return SimpleNamespace(calls=calls, queue=queue)


def test_odata_quote_escapes_single_quotes():
    assert odata_quote("O'Brien Admins") == "'O''Brien Admins'"


def test_get_sends_bearer_token_and_absolute_url(sent):
    sent.queue.append(_StubResponse({"id": "1"}))
    graph = GraphClient(_Credential(), max_retries=0)

    assert graph.get("/groups/1") == {"id": "1"}

    call = sent.calls[0]
    assert call.method == "GET"
    assert call.url == "https://graph.microsoft.com/v1.0/groups/1"
    assert call.headers["Authorization"].startswith("Bearer ")
    assert call.timeout == graph.timeout


def test_token_is_cached_until_near_expiry(sent):
    sent.queue.extend([_StubResponse({}), _StubResponse({})])
    credential = _Credential()
    graph = GraphClient(credential)

    graph.get("/me")
    graph.get("/me")

    assert credential.calls == 1


def test_token_refreshed_when_about_to_expire(sent):
    sent.queue.extend([_StubResponse({}), _StubResponse({})])
    credential = _Credential(expires_in=30)
    graph = GraphClient(credential)

    graph.get("/me")
    graph.get("/me")

    assert credential.calls == 2


def test_get_all_follows_odata_next_link(sent):
    sent.queue.extend([
        _StubResponse({"value": [{"id": "1"}], "@odata.nextLink": "https://graph.microsoft.com/v1.0/groups?$skiptoken=x"}),
        _StubResponse({"value": [{"id": "2"}]}),
    ])
    graph = GraphClient(_Credential())

    items = graph.get_all("/groups", params={"$filter": "displayName eq 'A'"})

    assert [item["id"] for item in items] == ["1", "2"]
    assert sent.calls[1].url == "https://graph.microsoft.com/v1.0/groups?$skiptoken=x"
    assert sent.calls[1].params is None


def test_get_all_follows_arm_next_link(sent):
    sent.queue.extend([
        _StubResponse({"value": [{"subscriptionId": "a"}], "nextLink": "https://management.azure.com/subscriptions?page=2"}),
        _StubResponse({"value": [{"subscriptionId": "b"}]}),
    ])
    arm = ArmClient(_Credential())

    items = arm.get_all("/subscriptions", params={"api-version": "2022-12-01"})

    assert len(items) == 2


@pytest.mark.parametrize("status", [401, 403])
def test_auth_failures_map_to_insufficient_permissions(sent, status):
    sent.queue.append(_StubResponse({"error": {"code": "Authorization_RequestDenied", "message": "denied"}}, status))
    graph = GraphClient(_Credential())

    with pytest.raises(InsufficientPermissionsError) as exc_info:
        graph.get("/directoryRoles")

    assert exc_info.value.status_code == status
    assert "Authorization_RequestDenied: denied" in str(exc_info.value)
    assert len(sent.calls) == 1


def test_client_errors_are_not_retried(sent):
    sent.queue.append(_StubResponse({"error": {"code": "Request_BadRequest", "message": "bad"}}, 400))
    graph = GraphClient(_Credential(), max_retries=3)

    with pytest.raises(AzureAPIError) as exc_info:
        graph.post("/groups", json={})

    assert not isinstance(exc_info.value, TransientAPIError)
    assert len(sent.calls) == 1


def test_throttling_is_retried_honoring_retry_after(sent, monkeypatch):
    sleeps = []
    monkeypatch.setattr(client_module.time, "sleep", sleeps.append)
    sent.queue.extend([
        _StubResponse({"error": {"message": "slow down"}}, 429, headers={"Retry-After": "7"}),
        _StubResponse({"id": "ok"}),
    ])
    graph = GraphClient(_Credential(), max_retries=2, retry_delay=1.0)

    assert graph.get("/users") == {"id": "ok"}
    assert sleeps == [7.0]


def test_transient_errors_give_up_after_max_retries(sent):
    sent.queue.extend([_StubResponse(None, 503) for _ in range(3)])
    graph = GraphClient(_Credential(), max_retries=2, retry_delay=0)

    with pytest.raises(TransientAPIError):
        graph.get("/users")

    assert len(sent.calls) == 3


def test_network_failures_become_transient(sent):
    sent.queue.extend([requests.exceptions.ConnectionError("reset"), _StubResponse({"value": []})])
    graph = GraphClient(_Credential(), max_retries=1, retry_delay=0)

    assert graph.get_all("/groups") == []


def test_no_content_response_returns_empty_dict(sent):
    sent.queue.append(_StubResponse(None, 204))
    graph = GraphClient(_Credential())

    assert graph.patch("/users/1", json={"employeeId": "X"}) == {}


def test_token_identity_reads_user_claims(sent):
    graph = GraphClient(_Credential())

    principal = graph.token_identity()

    assert principal.id == "00000000-0000-0000-0000-0000000000aa"
    assert principal.display_name == "op@contoso.com"
    assert principal.kind == "user"
    assert principal.tenant_id == "tenant"


def test_token_identity_detects_application_tokens(sent):
    credential = _Credential(claims={"oid": "sp-oid", "tid": "t", "appid": "app-id", "idtyp": "app"})
    graph = GraphClient(credential)

    principal = graph.token_identity()

    assert principal.kind == "servicePrincipal"
    assert principal.display_name == "app-id"


def test_create_clients_share_credential_and_tuning():
    credential = _Credential()
    config = ProvisioningConfig(http_max_retries=1, http_retry_delay_seconds=0.5, request_timeout=12)

    graph, arm = create_clients(config, credential)

    assert graph.credential is credential and arm.credential is credential
    assert graph.max_retries == 1 and arm.retry_delay == 0.5
    assert arm.timeout == 12
    assert arm.base_url == "https://management.azure.com"
