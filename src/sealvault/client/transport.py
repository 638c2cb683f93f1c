# SealVault - Server Client (httpx)
#
# Async HTTP client for the vault server. Every call either returns parsed
# data or raises a SealVaultError subclass; nothing is assumed to have
# succeeded after a network failure.
#
# Status mapping:
#   401/403         -> AuthorizationError
#   404             -> NotFoundError
#   409 stale epoch -> KeyMismatchError
#   409 other       -> ConflictError
#   400/422         -> ValidationError
#   anything else   -> TransportError

import hashlib
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from ..crypto.aead import b64encode
from ..exceptions import (
    AuthorizationError,
    ConflictError,
    KeyMismatchError,
    NotFoundError,
    TransportError,
    ValidationError,
)
from ..models import VaultDescriptor, parse_descriptor

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:8000"


def _detail(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"detail": response.text or response.reason_phrase}
    if isinstance(body, dict):
        return body
    return {"detail": body}


def raise_for_status(response: httpx.Response, vault_id: Optional[str] = None) -> None:
    """Translate an error response into the SealVault exception taxonomy."""
    status = response.status_code
    if status < 400:
        return
    body = _detail(response)
    detail = body.get("detail")
    message = detail if isinstance(detail, str) else json.dumps(detail)

    if status in (401, 403):
        raise AuthorizationError(message, status_code=status)
    if status == 404:
        raise NotFoundError(message)
    if status == 409:
        if body.get("code") == "stale_key_epoch":
            raise KeyMismatchError(message, vault_id=vault_id)
        raise ConflictError(message)
    if status in (400, 413, 422):
        raise ValidationError(message)
    raise TransportError(f"server error {status}: {message}", status_code=status)


class VaultServerClient:
    """Storage/transport collaborator used by VaultSession and ShareProtocol.

    Args:
        base_url: Server root URL.
        client: Optional pre-built httpx.AsyncClient (tests pass one bound
            to an ASGI transport).
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self.token = token
        self.user: Optional[Dict[str, Any]] = None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "VaultServerClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        params: Optional[Dict[str, Any]] = None,
        vault_id: Optional[str] = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method, path, json=json_body, params=params, headers=self._headers()
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc
        raise_for_status(response, vault_id=vault_id)
        return response

    async def _json(self, method: str, path: str, **kwargs) -> Any:
        response = await self._request(method, path, **kwargs)
        try:
            return response.json()
        except ValueError as exc:
            raise TransportError(f"{method} {path} returned invalid JSON") from exc

    # ------------------------------------------------------------------
    # Auth and identity keys
    # ------------------------------------------------------------------

    async def login(self, username: str, password: str) -> Dict[str, Any]:
        result = await self._json("POST", "/auth/login", json_body={"username": username, "password": password})
        self.token = result["token"]
        self.user = result["user"]
        return result

    async def logout(self) -> None:
        try:
            await self._request("POST", "/auth/logout")
        finally:
            self.token = None

    async def me(self) -> Dict[str, Any]:
        self.user = await self._json("GET", "/me")
        return self.user

    async def register_keys(self, registration: Dict[str, str]) -> None:
        await self._request("POST", "/keys/register", json_body=registration)

    async def get_my_keys(self) -> Optional[Dict[str, Any]]:
        try:
            return await self._json("GET", "/keys/me")
        except NotFoundError:
            return None

    async def reset_keys(self, confirm: str) -> None:
        await self._request("POST", "/keys/reset", json_body={"confirm": confirm})

    async def lookup_user(self, username: str) -> Dict[str, Any]:
        return await self._json("GET", "/users/lookup", params={"username": username})

    async def get_public_key(self, user_id: str) -> str:
        result = await self._json("GET", f"/users/{user_id}/public-key")
        return result["public_enc_key"]

    # ------------------------------------------------------------------
    # Vaults and blobs
    # ------------------------------------------------------------------

    async def create_vault(self, wrapped_key: str) -> Dict[str, Any]:
        return await self._json("POST", "/vaults", json_body={"kind": "personal", "wrapped_key": wrapped_key})

    async def list_vaults(self) -> List[VaultDescriptor]:
        result = await self._json("GET", "/vaults")
        return [parse_descriptor(item) for item in result.get("vaults", [])]

    async def get_vault(self, vault_id: str) -> VaultDescriptor:
        return parse_descriptor(await self._json("GET", f"/vaults/{vault_id}", vault_id=vault_id))

    async def upload_blob(self, vault_id: str, data: bytes, key_epoch: int = 1) -> Dict[str, Any]:
        body = {
            "data_b64": b64encode(data),
            "content_sha256": hashlib.sha256(data).hexdigest(),
            "key_epoch": key_epoch,
            "blob_type": "snapshot",
        }
        return await self._json("POST", f"/vaults/{vault_id}/blobs", json_body=body, vault_id=vault_id)

    async def fetch_latest_blob(self, vault_id: str) -> Optional[bytes]:
        """Latest blob bytes, or None when the vault is empty."""
        latest = await self.fetch_latest_blob_with_id(vault_id)
        return latest[0] if latest else None

    async def fetch_latest_blob_with_id(self, vault_id: str) -> Optional[Tuple[bytes, str]]:
        """(blob bytes, blob id) of the latest blob, or None when the vault is empty."""
        response = await self._request("GET", f"/vaults/{vault_id}/blobs/latest", vault_id=vault_id)
        if response.status_code == 204:
            return None
        data = response.content
        expected = response.headers.get("X-Content-SHA256")
        if expected and hashlib.sha256(data).hexdigest() != expected:
            raise TransportError(f"blob for vault {vault_id} arrived damaged")
        return data, response.headers.get("X-Blob-Id", "")

    async def list_blobs(self, vault_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        result = await self._json("GET", f"/vaults/{vault_id}/blobs", params={"limit": limit}, vault_id=vault_id)
        return result.get("blobs", [])

    # ------------------------------------------------------------------
    # Teams and shares
    # ------------------------------------------------------------------

    async def create_team(self, name: str, wrapped_key: str, team_public_key: str) -> Dict[str, Any]:
        return await self._json(
            "POST",
            "/teams",
            json_body={"name": name, "wrapped_key": wrapped_key, "team_public_key": team_public_key},
        )

    async def list_teams(self) -> List[Dict[str, Any]]:
        return (await self._json("GET", "/teams")).get("teams", [])

    async def get_team_public_key(self, team_id: str) -> Dict[str, Any]:
        return await self._json("GET", f"/teams/{team_id}/public-key")

    async def list_members(self, team_id: str) -> List[Dict[str, Any]]:
        return (await self._json("GET", f"/teams/{team_id}/members")).get("members", [])

    async def invite_member(self, team_id: str, user_id: str, role: str, wrapped_key: str) -> Dict[str, Any]:
        return await self._json(
            "POST",
            f"/teams/{team_id}/invite",
            json_body={"user_id": user_id, "role": role, "wrapped_key": wrapped_key},
        )

    async def accept_invite(self, team_id: str) -> Dict[str, Any]:
        return await self._json("POST", f"/teams/{team_id}/accept")

    async def update_member_role(self, team_id: str, member_id: str, role: str) -> Dict[str, Any]:
        return await self._json("POST", f"/teams/{team_id}/members/{member_id}/role", json_body={"role": role})

    async def remove_member(self, team_id: str, member_id: str) -> Dict[str, Any]:
        return await self._json("DELETE", f"/teams/{team_id}/members/{member_id}")

    async def list_team_shares(self, team_id: str) -> List[Dict[str, Any]]:
        return (await self._json("GET", f"/teams/{team_id}/shares")).get("shares", [])

    async def rotate_team_key(self, team_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._json("POST", f"/teams/{team_id}/rotate", json_body=payload)

    async def create_share(
        self,
        source_vault_id: str,
        wrapped_key: str,
        permissions: str = "read",
        target_user_id: Optional[str] = None,
        target_team_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        body = {
            "source_vault_id": source_vault_id,
            "wrapped_key": wrapped_key,
            "permissions": permissions,
            "target_user_id": target_user_id,
            "target_team_id": target_team_id,
        }
        return await self._json("POST", "/shares", json_body=body, vault_id=source_vault_id)

    async def revoke_share(self, share_id: str) -> None:
        await self._request("DELETE", f"/shares/{share_id}")

    # ------------------------------------------------------------------
    # Event stream
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def open_event_stream(self) -> AsyncIterator[AsyncIterator[Dict[str, Any]]]:
        """Connect to GET /sync/events; yields an iterator of event dicts.

        Designed as the opener for SyncEventStream.
        """
        try:
            async with self._client.stream(
                "GET",
                "/sync/events",
                headers={**self._headers(), "Accept": "text/event-stream"},
                timeout=httpx.Timeout(10.0, read=None),
            ) as response:
                if response.status_code != 200:
                    await response.aread()
                    raise_for_status(response)
                    raise TransportError(f"unexpected status {response.status_code}", response.status_code)
                yield self._iter_sse(response)
        except httpx.HTTPError as exc:
            raise TransportError(f"event stream failed: {exc}") from exc

    @staticmethod
    async def _iter_sse(response: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
        async for line in response.aiter_lines():
            if not line.startswith("data:"):
                continue
            try:
                yield json.loads(line[5:].strip())
            except json.JSONDecodeError:
                logger.warning("Skipping undecodable sync frame")
