"""REST provisioning backend built on httpx."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from ..contracts import (
    Credential,
    DiffAction,
    ResourceDescriptor,
    ResourceDiff,
    ResourceState,
)
from ..errors import AuthError, AuthReason, ReconcileError, ReconcileReason
from .base import ProvisioningBackend

logger = logging.getLogger(__name__)

_QUOTA_CODES = {"QuotaExceeded", "OperationNotAllowed", "InsufficientQuota"}


class HttpProvisioningBackend(ProvisioningBackend):
    """Talks to a resource API laid out as ``{base_url}/{kind}/{name}``.

    Resources are created with ``PUT``, updated with a ``PATCH`` carrying only
    the changed fields, and replaced with ``DELETE`` followed by ``PUT``.
    Writes are guarded with the etag observed by :meth:`get_state` so a
    concurrent modification surfaces as a conflict.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            )

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _path(descriptor: ResourceDescriptor) -> str:
        return f"/{quote(descriptor.kind, safe='')}/{quote(descriptor.name, safe='')}"

    async def _request(
        self,
        method: str,
        descriptor: ResourceDescriptor,
        credential: Credential,
        headers: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        await self.connect()
        request_headers = credential.authorization_header()
        request_headers.update(headers or {})
        try:
            return await self._client.request(
                method, self._path(descriptor), headers=request_headers, json=json
            )
        except httpx.TransportError as exc:
            raise ReconcileError(
                ReconcileReason.BACKEND_UNREACHABLE,
                f"{method} {descriptor.key} failed: {exc}",
            ) from exc

    async def get_state(
        self, descriptor: ResourceDescriptor, credential: Credential
    ) -> Optional[ResourceState]:
        resp = await self._request("GET", descriptor, credential)
        if resp.status_code == 404:
            return None
        _raise_for_status(resp, descriptor)
        body = _json_body(resp, descriptor)
        return ResourceState(
            resource_id=body.get("id") or descriptor.key,
            properties=body.get("properties", {}),
            etag=resp.headers.get("ETag") or body.get("etag"),
        )

    async def apply_diff(
        self, descriptor: ResourceDescriptor, diff: ResourceDiff, credential: Credential
    ) -> str:
        if diff.action == DiffAction.UPDATE:
            resp = await self._request(
                "PATCH",
                descriptor,
                credential,
                headers=_if_match(diff.etag),
                json={"properties": diff.changed_fields()},
            )
        else:
            if diff.action == DiffAction.REPLACE:
                logger.info(f"Deleting {descriptor.key} before re-creating it")
                deleted = await self._request(
                    "DELETE", descriptor, credential, headers=_if_match(diff.etag)
                )
                if deleted.status_code != 404:
                    _raise_for_status(deleted, descriptor)
            resp = await self._request(
                "PUT",
                descriptor,
                credential,
                headers={"If-None-Match": "*"},
                json={"properties": diff.desired},
            )
        _raise_for_status(resp, descriptor)
        if not resp.content:
            return descriptor.key
        return _json_body(resp, descriptor).get("id") or descriptor.key


def _json_body(resp: httpx.Response, descriptor: ResourceDescriptor) -> Dict[str, Any]:
    try:
        body = resp.json()
    except ValueError as exc:
        raise ReconcileError(
            ReconcileReason.BACKEND_UNREACHABLE,
            f"{descriptor.key}: HTTP {resp.status_code} with a non-JSON body",
        ) from exc
    if not isinstance(body, dict):
        raise ReconcileError(
            ReconcileReason.BACKEND_UNREACHABLE,
            f"{descriptor.key}: HTTP {resp.status_code} body is not a JSON object",
        )
    return body


def _if_match(etag: Optional[str]) -> Dict[str, str]:
    return {"If-Match": etag} if etag else {}


def _raise_for_status(resp: httpx.Response, descriptor: ResourceDescriptor) -> None:
    status = resp.status_code
    if status < 400:
        return
    try:
        body = resp.json()
    except ValueError:
        body = {}
    error = body.get("error", {}) if isinstance(body, dict) else {}
    code =error.get("code", "") if isinstance(error, dict) else ""
    message = f"{descriptor.key}: HTTP {status} {code}".strip()

    if status in (409, 412):
        raise ReconcileError(ReconcileReason.CONFLICT, message)
    if status == 507 or code in _QUOTA_CODES:
        raise ReconcileError(ReconcileReason.QUOTA_EXCEEDED, message)
    if status in (401, 403):
        raise AuthError(AuthReason.SCOPE_DENIED, message)
    if status in (400, 404, 422):
        raise ReconcileError(ReconcileReason.INVALID_DESIRED_STATE, message)
    raise ReconcileError(ReconcileReason.BACKEND_UNREACHABLE, message)
