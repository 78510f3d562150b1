"""Async REST client for the resource platform (products, thngs, projects)."""

import logging
import re
from typing import Any

import httpx

from bulkloader.errors import SemanticRemoteError, TransientRemoteError


logger = logging.getLogger(__name__)

COLLECTIONS: dict[str, str] = {
    "product": "products",
    "thng": "thngs",
    "project": "projects",
}

# Operators of the platform filter grammar; literal occurrences need a backslash.
_FILTER_SPECIALS = re.compile(r"([\\,&|!=<>])")


def collection_for(resource_type: str) -> str:
    try:
        return COLLECTIONS[resource_type]
    except KeyError:
        raise ValueError(f"unsupported resource type: {resource_type}") from None


def escape_filter_value(value: object) -> str:
    return _FILTER_SPECIALS.sub(r"\\\1", str(value))


def build_filter(match_key: str | dict[str, str]) -> str:
    """Render a match key as a platform ``filter`` expression.

    A scalar matches by name; a mapping matches by identifier, e.g.
    ``{"gs1:01": "0123"}`` becomes ``identifiers.gs1:01=0123``. Filter
    operators inside keys and values are backslash-escaped.
    """
    if isinstance(match_key, dict):
        return "&".join(
            f"identifiers.{escape_filter_value(key)}={escape_filter_value(value)}" for key, value in match_key.items()
        )
    return f"name={escape_filter_value(match_key)}"


class PlatformClient:
    def __init__(
        self,
        api_url: str,
        api_key: str,
        *,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key.strip():
            raise ValueError("api_key must not be blank")

        self._api = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            headers={"Authorization": api_key, "Accept": "application/json"},
            timeout=timeout_seconds,
            transport=transport,
        )
        # Artifact downloads go to third-party hosts and must not carry the key.
        self._plain = httpx.AsyncClient(timeout=timeout_seconds, transport=transport, follow_redirects=True)

    async def __aenter__(self) -> "PlatformClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._api.aclose()
        await self._plain.aclose()

    async def upsert(self, resource_type: str, document: dict[str, Any], match_key: str | dict[str, str]) -> dict[str, Any]:
        collection = collection_for(resource_type)
        matches = await self._request("GET", f"/{collection}", params={"filter": build_filter(match_key)})

        if matches:
            existing_id = matches[0]["id"]
            logger.debug("updating existing resource", extra={"collection": collection, "id": existing_id})
            return await self._request("PUT", f"/{collection}/{existing_id}", json=document)

        logger.debug("creating resource", extra={"collection": collection})
        return await self._request("POST", f"/{collection}", json=document)

    async def update_scope(self, resource_type: str, resource_id: str, project_id: str) -> dict[str, Any]:
        collection = collection_for(resource_type)
        payload = {"scopes": {"projects": [f"+{project_id}"]}}
        return await self._request("PUT", f"/{collection}/{resource_id}", json=payload)

    async def upsert_secondary(self, resource_type: str, resource_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        path = f"/{collection_for(resource_type)}/{resource_id}/redirector"
        try:
            return await self._request("PUT", path, json=payload)
        except SemanticRemoteError as exc:
            if exc.status_code != 404:
                raise
        return await self._request("POST", path, json=payload)

    async def fetch_bytes(self, url: str) -> bytes:
        response = await self._send(self._plain, "GET", url)
        return response.content

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._send(self._api, method, path, **kwargs)
        if not response.content:
            return {}
        return response.json()

    async def _send(self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise TransientRemoteError(f"{method} {url} failed: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientRemoteError(
                f"{method} {url} returned {response.status_code}: {_error_text(response)}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise SemanticRemoteError(
                f"{method} {url} returned {response.status_code}: {_error_text(response)}",
                status_code=response.status_code,
            )
        return response


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase

    if isinstance(body, dict) and body.get("errors"):
        return "; ".join(str(error) for error in body["errors"])
    return str(body)
