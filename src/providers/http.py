"""HTTP provider.

Talks to a REST provider API:

    POST   {endpoint}/resources/{kind}        body: attributes
           -> 201 {"id": ..., "attributes": {...}}
    PATCH  {endpoint}/resources/{kind}/{id}   body: attributes
           -> 200 {"attributes": {...}}
           -> 409 {"error": {"code": "requires_replacement", "message": ...}}
    GET    {endpoint}/resources/{kind}/{id}   -> 200 {"attributes": {...}} | 404
    DELETE {endpoint}/resources/{kind}/{id}   -> 204 | 404 (already gone)
"""

import logging
from typing import Any, Optional

import requests
import urllib3

from errors import NotFound, ProviderError, ProviderTimeout, RequiresReplacement

logger = logging.getLogger(__name__)


class HttpProvider:
    """Provider backed by a REST API."""

    def __init__(self, endpoint: str, token: str = '', verify_tls: bool = True,
                 timeout: float = 300.0, session: Optional[requests.Session] = None):
        """Initialize the provider client.

        Args:
            endpoint: Base URL (e.g., https://cloud.example:8443/v1)
            token: Bearer token sent with every request
            verify_tls: Verify the server certificate
            timeout: Per-request timeout in seconds
            session: Optional requests session (for connection reuse / tests)
        """
        self.endpoint = endpoint.rstrip('/')
        self.token = token
        self.verify_tls = verify_tls
        self.timeout = timeout
        self.session = session or requests.Session()

        if not verify_tls:
            # Self-signed provider endpoints
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def _url(self, kind: str, resource_id: Optional[str] = None) -> str:
        if resource_id is None:
            return f"{self.endpoint}/resources/{kind}"
        return f"{self.endpoint}/resources/{kind}/{resource_id}"

    def _headers(self) -> dict:
        headers = {'Accept': 'application/json'}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        return headers

    def _parse_error(self, resp: requests.Response) -> tuple[str, str]:
        """Return (code, message) from an error response body.

        Bodies that are not {"error": {"code": ..., "message": ...}} fall
        back to the status code and raw text.
        """
        code, message = str(resp.status_code), resp.text[:200]
        try:
            data = resp.json()
        except ValueError:
            return code, message
        error = data.get('error') if isinstance(data, dict) else None
        if isinstance(error, dict):
            return str(error.get('code', code)), str(error.get('message', message))
        if isinstance(error, str):
            return code, error
        return code, message

    def _body(self, resp: requests.Response, operation: str, kind: str,
              resource_id: Optional[str] = None) -> dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            raise ProviderError("response is not JSON", kind=kind,
                                resource_id=resource_id, operation=operation) from None
        if not isinstance(data, dict):
            raise ProviderError("response must be a JSON object", kind=kind,
                                resource_id=resource_id, operation=operation)
        return data

    def _request(self, method: str, operation: str, kind: str,
                 resource_id: Optional[str] = None, body: Optional[dict] = None) -> requests.Response:
        url = self._url(kind, resource_id)
        logger.debug(f"{method} {url}")
        try:
            return self.session.request(
                method, url,
                json=body,
                headers=self._headers(),
                verify=self.verify_tls,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            raise ProviderTimeout(f"timed out after {self.timeout}s", kind=kind,
                                  resource_id=resource_id, operation=operation) from None
        except requests.exceptions.ConnectionError as e:
            raise ProviderError(f"cannot connect to {self.endpoint}: {e}", kind=kind,
                                resource_id=resource_id, operation=operation) from e
        except requests.exceptions.RequestException as e:
            raise ProviderError(str(e), kind=kind, resource_id=resource_id,
                                operation=operation) from e

    def _fail(self, resp: requests.Response, operation: str, kind: str,
              resource_id: Optional[str] = None) -> ProviderError:
        code, message = self._parse_error(resp)
        if resp.status_code == 404:
            return NotFound(message, kind=kind, resource_id=resource_id, operation=operation)
        if resp.status_code == 409 and code == 'requires_replacement':
            return RequiresReplacement(message, kind=kind, resource_id=resource_id,
                                       operation=operation)
        return ProviderError(f"HTTP {resp.status_code} ({code}): {message}", kind=kind,
                             resource_id=resource_id, operation=operation)

    def _attributes(self, data: dict, operation: str, kind: str,
                    resource_id: Optional[str] = None) -> dict[str, Any]:
        attributes = data.get('attributes', {})
        if not isinstance(attributes, dict):
            raise ProviderError("response attributes must be an object", kind=kind,
                                resource_id=resource_id, operation=operation)
        return attributes

    def create(self, kind: str, attributes: dict) -> tuple[str, dict]:
        resp = self._request('POST', 'create', kind, body=attributes)
        if resp.status_code not in (200, 201):
            raise self._fail(resp, 'create', kind)
        data = self._body(resp, 'create', kind)
        observed = self._attributes(data, 'create', kind)
        resource_id = data.get('id')
        if not resource_id:
            raise ProviderError("response has no id", kind=kind, operation='create')
        logger.info(f"[http] created {kind} {resource_id}")
        return str(resource_id), observed

    def update(self, kind: str, resource_id: str, attributes: dict) -> dict:
        resp = self._request('PATCH', 'update', kind, resource_id, body=attributes)
        if resp.status_code != 200:
            raise self._fail(resp, 'update', kind, resource_id)
        logger.info(f"[http] updated {kind} {resource_id}")
        data = self._body(resp, 'update', kind, resource_id)
        return self._attributes(data, 'update', kind, resource_id)

    def describe(self, kind: str, resource_id: str) -> dict:
        resp = self._request('GET', 'describe', kind, resource_id)
        if resp.status_code != 200:
            raise self._fail(resp, 'describe', kind, resource_id)
        data = self._body(resp, 'describe', kind, resource_id)
        return self._attributes(data, 'describe', kind, resource_id)

    def destroy(self, kind: str, resource_id: str) -> None:
        resp = self._request('DELETE', 'destroy', kind, resource_id)
        if resp.status_code == 404:
            logger.warning(f"[http] {kind} {resource_id} already gone")
            return
        if resp.status_code not in (200, 202, 204):
            raise self._fail(resp, 'destroy', kind, resource_id)
        logger.info(f"[http] destroyed {kind} {resource_id}")
