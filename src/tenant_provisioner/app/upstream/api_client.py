"""Async HTTP client for the infrastructure control-plane API.

All calls are scoped to one control-plane workspace and authenticate with a
static bearer token that never leaves the provisioner. Transient failures
(timeouts, 429 and 5xx) are retried with exponential backoff and jitter,
honouring ``Retry-After``. Everything else is mapped onto the provisioning
error taxonomy:

  - 404 -> ``UpstreamNotFoundError``
  - 428 -> ``PreconditionRequiredError`` (never retried here; the change-set
    client owns that policy)
  - other 4xx/5xx -> ``UpstreamError``
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any

import httpx

from ..errors import PreconditionRequiredError, UpstreamError, UpstreamNotFoundError

logger = logging.getLogger(__name__)

HEAD = 'HEAD'
"""Unit id that addresses the current merged state instead of an open unit."""

# Status codes eligible for automatic retry.
_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

_DEFAULT_MAX_RETRIES = 3
_DEFAULT_BASE_DELAY = 1.0  # seconds
_DEFAULT_MAX_DELAY = 30.0  # seconds


class UpstreamTimeoutError(UpstreamError):
    """Request to the control plane timed out on every attempt."""

    code = 'upstream_timeout'

    def __init__(self, message: str = 'Request timed out') -> None:
        super().__init__(0, message)


# ── Module-level shared client ───────────────────────────────────

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


# ── Client ───────────────────────────────────────────────────────


class ControlPlaneClient:
    """Thin REST wrapper over the control-plane change-set API.

    Methods return decoded JSON payloads; shaping them into domain objects is
    the job of ``ChangeSetClient`` and ``ResourceClient``.
    """

    def __init__(
        self,
        *,
        workspace_id: str,
        api_token: str,
        base_url: str = 'https://api.systeminit.com',
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        max_retries: int = _DEFAULT_MAX_RETRIES,
        base_delay: float = _DEFAULT_BASE_DELAY,
        max_delay: float = _DEFAULT_MAX_DELAY,
    ) -> None:
        if not workspace_id:
            raise ValueError('workspace_id is required')
        if not api_token:
            raise ValueError('api_token is required')

        self._workspace_id = workspace_id
        self._api_token = api_token
        self._base_url = base_url.rstrip('/')
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay

    @property
    def workspace_id(self) -> str:
        return self._workspace_id

    def _auth_headers(self) -> dict[str, str]:
        # Never log these headers.
        return {
            'Authorization': f'Bearer {self._api_token}',
            'Content-Type': 'application/json',
        }

    def _unit_path(self, unit_id: str, suffix: str = '') -> str:
        return f'/v1/w/{self._workspace_id}/change-sets/{unit_id}{suffix}'

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return

        body = resp.text
        message = body[:200] if body else f'HTTP {resp.status_code}'

        try:
            payload = resp.json()
            if isinstance(payload, dict):
                message = payload.get('error', payload.get('message', message))
        except (ValueError, KeyError):
            pass
        if not isinstance(message, str):
            message = str(message)

        if resp.status_code == 404:
            raise UpstreamNotFoundError(message=message, response_body=body)
        if resp.status_code == 428:
            raise PreconditionRequiredError(message=message, response_body=body)

        raise UpstreamError(
            status_code=resp.status_code,
            message=message,
            response_body=body,
        )

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential backoff retry for transient errors."""
        url = f'{self._base_url}{path}'
        headers = self._auth_headers()

        for attempt in range(self._max_retries + 1):
            try:
                resp = await self._client.request(
                    method,
                    url,
                    headers=headers,
                    json=json,
                    params=params,
                    timeout=self._timeout,
                )
            except httpx.TimeoutException as e:
                if attempt < self._max_retries:
                    delay = self._backoff_delay(attempt)
                    logger.warning(
                        'Control plane request timeout (attempt %d/%d), retrying in %.1fs',
                        attempt + 1,
                        self._max_retries + 1,
                        delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise UpstreamTimeoutError(str(e) or 'Request timed out') from e

            if resp.status_code not in _RETRYABLE_STATUS_CODES:
                return resp

            if attempt < self._max_retries:
                delay = self._retry_after_delay(resp, attempt)
                logger.warning(
                    'Control plane %s %s returned %d (attempt %d/%d), retrying in %.1fs',
                    method,
                    path,
                    resp.status_code,
                    attempt + 1,
                    self._max_retries + 1,
                    delay,
                )
                await asyncio.sleep(delay)
            else:
                return resp

        raise UpstreamError(0, 'exhausted retries with no response')

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with full jitter."""
        delay = min(self._base_delay * (2 ** attempt), self._max_delay)
        return random.uniform(0, delay)

    def _retry_after_delay(self, resp: httpx.Response, attempt: int) -> float:
        """Use Retry-After header if present, otherwise exponential backoff."""
        retry_after = resp.headers.get('retry-after')
        if retry_after:
            try:
                return max(float(retry_after), 0.1)
            except ValueError:
                pass
        return self._backoff_delay(attempt)

    async def _call(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
    ) -> dict[str, Any]:
        resp = await self._request_with_retry(method, path, json=json)
        self._raise_for_status(resp)
        if not resp.content:
            return {}
        payload = resp.json()
        if not isinstance(payload, dict):
            raise UpstreamError(
                status_code=resp.status_code,
                message=f'Expected object from {path}, got {type(payload).__name__}',
            )
        return payload

    # ── Change sets ──────────────────────────────────────────────

    async def create_change_set(self, name: str) -> dict[str, Any]:
        return await self._call(
            'POST',
            f'/v1/w/{self._workspace_id}/change-sets',
            json={'changeSetName': name},
        )

    async def force_apply(self, unit_id: str) -> dict[str, Any]:
        """Commit a change set. Raises PreconditionRequiredError on 428."""
        return await self._call('POST', self._unit_path(unit_id, '/force_apply'))

    async def merge_status(self, unit_id: str) -> dict[str, Any]:
        return await self._call('GET', self._unit_path(unit_id, '/merge_status'))

    # ── Components ───────────────────────────────────────────────

    async def create_component(
        self,
        unit_id: str,
        *,
        schema_name: str,
        name: str,
        attributes: dict[str, Any],
        view_name: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            'schemaName': schema_name,
            'name': name,
            'attributes': attributes,
        }
        if view_name:
            payload['viewName'] = view_name
        result = await self._call(
            'POST', self._unit_path(unit_id, '/components'), json=payload,
        )
        logger.info(
            'Component created: schema=%s name=%s',
            schema_name,
            name,
            extra={'unit_id': unit_id},
        )
        return result

    async def get_component(self, unit_id: str, component_id: str) -> dict[str, Any]:
        return await self._call(
            'GET', self._unit_path(unit_id, f'/components/{component_id}'),
        )

    # ── Actions ──────────────────────────────────────────────────

    async def list_actions(self, unit_id: str) -> dict[str, Any]:
        return await self._call('GET', self._unit_path(unit_id, '/actions'))

    async def put_action_on_hold(self, unit_id: str, action_id: str) -> dict[str, Any]:
        return await self._call(
            'POST', self._unit_path(unit_id, f'/actions/{action_id}/put_on_hold'),
        )
