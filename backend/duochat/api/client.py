"""Async client for the chat server's REST endpoints.

Covers the non-real-time half of the server contract: identity generation,
room lookup and membership, message history, and voice uploads. Every
failure surfaces as ``ApiError`` carrying the HTTP status (None when no
response arrived); translating that into a user-facing error is left to the
caller.
"""
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from duochat.api.schemas import HistoryResponse, RoomInfo
from duochat.messages.schemas import VoiceClip, VoiceUploadResult

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """A REST call failed.

    Attributes:
        status_code: HTTP status, or None for transport failures.
        detail: Server-provided error text when available.
    """

    def __init__(self, status_code: Optional[int], detail: str = ""):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"{status_code or 'no response'}: {detail}" if detail else str(status_code))


class ApiClient:
    """Thin wrapper over ``httpx.AsyncClient`` for the chat REST surface.

    Args:
        base_url: Server root, e.g. ``http://localhost:3000``.
        timeout: Per-request timeout in seconds.
        auth_token: Optional bearer token.
        transport: Custom httpx transport (tests mount an ASGI app here).
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        auth_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {auth_token}"} if auth_token else None
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning(f"[API] {method} {path} failed: {exc}")
            raise ApiError(None, str(exc)) from exc

        if response.is_error:
            detail = _error_detail(response)
            logger.info(f"[API] {method} {path} -> {response.status_code} {detail}")
            raise ApiError(response.status_code, detail)

        try:
            return response.json()
        except ValueError as exc:
            raise ApiError(response.status_code, "Invalid JSON in response") from exc

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def generate_identity(self) -> str:
        """Ask the server for a fresh user id."""
        data = await self._request("GET", "/api/generate-user-id")
        user_id = None
        if isinstance(data, dict):
            user_id = data.get("userId") or data.get("id")
        if not user_id:
            raise ApiError(200, "Response carried no user id")
        return str(user_id)

    async def get_room_info(self, room_id: str) -> RoomInfo:
        data = await self._request("GET", f"/api/c/{room_id}")
        room = data.get("room", data) if isinstance(data, dict) else data
        try:
            return RoomInfo.model_validate(room)
        except ValidationError as exc:
            raise ApiError(200, f"Malformed room info: {exc.error_count()} errors") from exc

    async def join_room(self, room_id: str, user_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/api/c/{room_id}/join", json={"userId": user_id})

    async def get_room_messages(self, room_id: str, user_id: str) -> HistoryResponse:
        """Fetch the persisted history of *room_id* as seen by *user_id*."""
        data = await self._request("GET", f"/api/c/{room_id}/messages", params={"userId": user_id})
        try:
            return HistoryResponse.model_validate(data)
        except ValidationError as exc:
            raise ApiError(200, f"Malformed history: {exc.error_count()} errors") from exc

    async def upload_voice_message(
        self,
        clip: VoiceClip,
        room_id: str,
        sender_id: str,
        duration: float,
        temp_id: str,
    ) -> VoiceUploadResult:
        """Upload a recorded clip as multipart form data.

        Returns:
            The durable file URL and, when the server persisted the message
            already, its server id.
        """
        files = {"audio": (f"voice-{temp_id}.{clip.extension}", clip.data, clip.mime_type)}
        form = {
            "roomId": room_id,
            "senderId": sender_id,
            "duration": str(duration),
            "tempId": temp_id,
        }
        data = await self._request("POST", f"/api/c/{room_id}/voice", data=form, files=files)
        if not isinstance(data, dict) or not data.get("success", True) or not data.get("file_url"):
            raise ApiError(200, "Upload response carried no file URL")
        message_id = data.get("messageId")
        return VoiceUploadResult(
            file_url=data["file_url"],
            message_id=str(message_id) if message_id is not None else None,
        )

    async def health_check(self) -> bool:
        try:
            await self._request("GET", "/health")
        except ApiError:
            return False
        return True


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or body.get("message") or "")
    return ""
