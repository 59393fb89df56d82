"""Low-level HTTP clients for Microsoft Graph and Azure Resource Manager.

Handles bearer tokens, paging, error mapping and bounded retry of transient
failures.
"""
from __future__ import annotations
import logging
import time
from typing import Any, Dict, List, Optional

import jwt
import requests
from azure.identity import DefaultAzureCredential

from crossadmin.core.models import Principal
from .exceptions import AzureAPIError, InsufficientPermissionsError, TransientAPIError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
ARM_BASE_URL = "https://management.azure.com"
ARM_SCOPE = "https://management.azure.com/.default"

TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}


def odata_quote(value: str) -> str:
    """Quote a string literal for an OData $filter expression."""
    return "'" + str(value).replace("'", "''") + "'"


class AzureRestClient:
    """Bearer-token HTTP client with automatic token refresh.

    Features:
    - Token acquisition through an azure-identity credential
    - Paging over ``value`` collections (``@odata.nextLink`` / ``nextLink``)
    - HTTP errors mapped onto the provisioning exception taxonomy
    - Fixed-delay retry of throttling, 5xx and network failures

    Usage:
        client = GraphClient()
        groups = client.get_all("/groups", params={"$filter": "displayName eq 'Ops'"})
    """

    def __init__(
        self,
        base_url: str,
        scope: str,
        credential: Any = None,
        *,
        max_retries: int = 3,
        retry_delay: float = 5.0,
        timeout: float = REQUEST_TIMEOUT,
    ):
        """Initialize client.

        Args:
            base_url: API root (no trailing slash)
            scope: OAuth scope requested for this API
            credential: azure-identity credential (defaults to DefaultAzureCredential)
            max_retries: Retries after a transient failure
            retry_delay: Seconds between retries when the server gives no Retry-After
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.scope = scope
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._credential = credential
        self._token: Optional[str] = None
        self._token_expires_on: float = 0.0

    @property
    def credential(self) -> Any:
        if self._credential is None:
            self._credential = DefaultAzureCredential()
        return self._credential

    def get_token(self) -> str:
        """Return a bearer token, refreshing it when it expires within a minute."""
        if not self._token or time.time() >= self._token_expires_on - 60:
            access_token = self.credential.get_token(self.scope)
            self._token = access_token.token
            self._token_expires_on = float(access_token.expires_on)
        return self._token

    def token_claims(self) -> Dict[str, Any]:
        """Decode the current access token's claims (signature not verified)."""
        return jwt.decode(self.get_token(), options={"verify_signature": False})

    def token_identity(self) -> Principal:
        """Describe the acting principal from the access token's claims."""
        claims = self.token_claims()
        is_app = claims.get("idtyp") == "app" or ("appid" in claims and "upn" not in claims and "unique_name" not in claims)
        display_name = claims.get("upn") or claims.get("unique_name") or claims.get("app_displayname") or claims.get("appid") or ""
        return Principal(
            id=claims.get("oid", ""),
            display_name=display_name,
            kind="servicePrincipal" if is_app else "user",
            tenant_id=claims.get("tid"),
        )

    def get(self, path: str, params: Optional[Dict] = None, headers: Optional[Dict] = None) -> Dict[str, Any]:
        """Execute GET and return the decoded JSON body."""
        resp = self._request("GET", path, params=params, headers=headers)
        return self._json(resp)

    def get_all(self, path: str, params: Optional[Dict] = None, headers: Optional[Dict] = None) -> List[Dict[str, Any]]:
        """Execute GET and follow next links, returning every item of ``value``."""
        items: List[Dict[str, Any]] = []
        body = self.get(path, params=params, headers=headers)
        items.extend(body.get("value", []))
        next_link = body.get("@odata.nextLink") or body.get("nextLink")
        while next_link:
            body = self.get(next_link, headers=headers)
            items.extend(body.get("value", []))
            next_link = body.get("@odata.nextLink") or body.get("nextLink")
        return items

    def post(self, path: str, json: Optional[Dict] = None, params: Optional[Dict] = None) -> Dict[str, Any]:
        """Execute POST and return the decoded JSON body (empty dict for 204)."""
        resp = self._request("POST", path, params=params, json=json)
        return self._json(resp)

    def patch(self, path: str, json: Dict, params: Optional[Dict] = None) -> Dict[str, Any]:
        """Execute PATCH and return the decoded JSON body (empty dict for 204)."""
        resp = self._request("PATCH", path, params=params, json=json)
        return self._json(resp)

    def put(self, path: str, json: Dict, params: Optional[Dict] = None) -> Dict[str, Any]:
        """Execute PUT and return the decoded JSON body."""
        resp = self._request("PUT", path, params=params, json=json)
        return self._json(resp)

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict] = None,
        json: Optional[Dict] = None,
        headers: Optional[Dict] = None,
    ) -> requests.Response:
        url = path if path.startswith("https://") or path.startswith("http://") else f"{self.base_url}{path}"
        attempt = 0
        while True:
            try:
                resp = self._send(method, url, params=params, json=json, headers=headers)
                self._handle_error(resp)
                return resp
            except TransientAPIError as exc:
                attempt += 1
                if attempt > self.max_retries:
                    raise
                delay = exc.retry_after if exc.retry_after is not None else self.retry_delay
                logger.warning(
                    "[http] %s %s failed transiently (%s); retry %d/%d in %ss",
                    method, url, exc.status_code, attempt, self.max_retries, delay,
                )
                time.sleep(delay)

    def _send(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict] = None,
        json: Optional[Dict] = None,
        headers: Optional[Dict] = None,
    ) -> requests.Response:
        request_headers = dict(headers or {})
        request_headers["Authorization"] = f"Bearer {self.get_token()}"
        try:
            return requests.request(
                method,
                url,
                params=params,
                json=json,
                headers=request_headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as exc:
            raise TransientAPIError(0, str(exc), url) from exc

    @staticmethod
    def _json(resp: requests.Response) -> Dict[str, Any]:
        if resp.status_code == 204 or not resp.content:
            return {}
        return resp.json()

    def _handle_error(self, resp: requests.Response) -> None:
        """Centralized error handling for HTTP responses.

        Raises:
            InsufficientPermissionsError: 401/403
            TransientAPIError: 408, 429 and 5xx
            AzureAPIError: Any other status >= 400
        """
        if resp.status_code < 400:
            return
        message = _error_message(resp)
        if resp.status_code in (401, 403):
            raise InsufficientPermissionsError(resp.status_code, message, resp.url)
        if resp.status_code in TRANSIENT_STATUS_CODES:
            retry_after = resp.headers.get("Retry-After")
            try:
                retry_seconds = float(retry_after) if retry_after else None
            except ValueError:
                retry_seconds = None
            raise TransientAPIError(resp.status_code, message, resp.url, retry_after=retry_seconds)
        raise AzureAPIError(resp.status_code, message, resp.url)


def _error_message(resp: requests.Response) -> str:
    """Extract ``error.message`` from a Graph/ARM error body, else the raw text."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        code = error.get("code", "")
        message = error.get("message", "")
        return f"{code}: {message}" if code else message
    return resp.text


class GraphClient(AzureRestClient):
    """Client for Microsoft Graph v1.0."""

    def __init__(self, credential: Any = None, *, base_url: str = GRAPH_BASE_URL, **kwargs):
        super().__init__(base_url, GRAPH_SCOPE, credential, **kwargs)


class ArmClient(AzureRestClient):
    """Client for Azure Resource Manager."""

    def __init__(self, credential: Any = None, *, base_url: str = ARM_BASE_URL, **kwargs):
        super().__init__(base_url, ARM_SCOPE, credential, **kwargs)


def create_clients(config, credential: Any = None) -> tuple[GraphClient, ArmClient]:
    """Build Graph and ARM clients sharing one credential and the configured retry tuning."""
    credential = credential or DefaultAzureCredential()
    options = {
        "max_retries": config.http_max_retries,
        "retry_delay": config.http_retry_delay_seconds,
        "timeout": config.request_timeout,
    }
    graph = GraphClient(credential, base_url=config.graph_base_url, **options)
    arm = ArmClient(credential, base_url=config.arm_base_url, **options)
    return graph, arm
