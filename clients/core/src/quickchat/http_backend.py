"""aiohttp client for the reference backend's REST + WebSocket API."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from .backend import Backend, ChangeCallback, ChangeEvent, Subscription
from .errors import (
    ChatError,
    RealtimeUnavailableError,
    SessionInvalidError,
    TransientError,
    error_from_payload,
)
from .models import FileRef, User
from .query import Query, Record

logger = logging.getLogger(__name__)


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def _decode(raw: str) -> Any:
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        return None


class _WebSocketSubscription(Subscription):
    def __init__(self, ws: aiohttp.ClientWebSocketResponse, sub_id: str, callback: ChangeCallback) -> None:
        self._ws = ws
        self._sub_id = sub_id
        self._callback = callback
        self._reader: Optional[asyncio.Task] = asyncio.create_task(self._read())

    async def _read(self) -> None:
        try:
            async for msg in self._ws:
                if msg.type != aiohttp.WSMsgType.TEXT:
                    break
                try:
                    frame = msg.json()
                except ValueError:
                    frame = None
                if not isinstance(frame, dict):
                    logger.debug("ignoring malformed frame on %s", self._sub_id)
                    continue
                await self._handle(frame)
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            logger.warning("subscription %s failed: %s", self._sub_id, exc)
        logger.info("subscription %s closed by server", self._sub_id)
        self._mark_lost()

    async def _handle(self, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("t")
        body = frame.get("body")
        if not isinstance(body, dict):
            body = {}
        if frame_type == "object.event" and body.get("sub_id") == self._sub_id:
            record = body.get("object")
            if not isinstance(record, dict):
                return
            event = ChangeEvent(op=str(body.get("op")), kind=str(body.get("kind")), record=record)
            try:
                self._callback(event)
            except Exception:
                logger.exception("change callback for %s failed", self._sub_id)
        elif frame_type == "ping":
            await self._ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
        elif frame_type == "error":
            logger.warning("subscription %s error: %s", self._sub_id, body.get("code"))

    async def unsubscribe(self) -> None:
        reader, self._reader = self._reader, None
        if reader is None:
            return
        reader.cancel()
        try:
            await reader
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("subscription %s reader failed", self._sub_id)
        finally:
            await self._ws.close()


class HttpBackend(Backend):
    """A :class:`Backend` speaking JSON over HTTP with a bearer session token.

    Connection failures and timeouts surface as :class:`TransientError`;
    structured error bodies are mapped through :func:`error_from_payload`.
    """

    supports_realtime = True

    def __init__(self, base_url: str, *, timeout_s: float = 10.0, realtime: bool = True) -> None:
        self.base_url = base_url
        self.timeout_s = timeout_s
        self.supports_realtime = realtime
        self._http: Optional[aiohttp.ClientSession] = None
        self._token: Optional[str] = None
        self._user: Optional[User] = None
        self._sub_counter = 0

    @property
    def session_token(self) -> Optional[str]:
        return self._token

    def _client(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        return self._http

    def _headers(self) -> Dict[str, str]:
        if self._token is None:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[Dict[str, Any]] = None,
        data: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        request_headers = self._headers()
        if headers:
            request_headers.update(headers)
        try:
            async with self._client().request(
                method,
                _build_url(self.base_url, path),
                json=payload,
                data=data,
                headers=request_headers,
                params=params,
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            ) as response:
                raw = await response.text()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientError(f"{method} {path} failed: {exc}") from exc
        body = _decode(raw)
        if status >= 400:
            raise error_from_payload(status, body)
        if not isinstance(body, dict):
            raise TransientError(f"{method} {path} returned a malformed body")
        return body

    def _adopt_session(self, body: Dict[str, Any]) -> User:
        token = body.get("session_token")
        user = body.get("user")
        if not isinstance(token, str) or not isinstance(user, dict):
            raise TransientError("auth response missing session_token or user")
        self._token = token
        self._user = User.from_record(user)
        return self._user

    async def login(self, identifier: str, secret: str) -> User:
        body = await self._request("POST", "/v1/login", payload={"identifier": identifier, "secret": secret})
        return self._adopt_session(body)

    async def signup(self, identifier: str, secret: str, attributes: Optional[Dict[str, Any]] = None) -> User:
        body = await self._request(
            "POST",
            "/v1/users",
            payload={"identifier": identifier, "secret": secret, "attributes": dict(attributes or {})},
        )
        return self._adopt_session(body)

    def current_user(self) -> Optional[User]:
        return self._user

    async def logout(self) -> None:
        try:
            if self._token is not None:
                await self._request("POST", "/v1/logout", payload={})
        except SessionInvalidError:
            pass
        finally:
            self._token = None
            self._user = None

    async def query(self, query: Query) -> List[Record]:
        records: List[Record] = []
        fetched = 0
        while True:
            page = query.skip(query.offset + fetched)
            if query.limit is not None:
                page = page.take(query.limit - fetched)
            body = await self._request("POST", "/v1/query", payload={"query": page.to_wire()})
            items = body.get("items")
            if not isinstance(items, list):
                raise TransientError("query response missing items")
            fetched += len(items)
            records.extend(item for item in items if isinstance(item, dict))
            # The server caps each page and flags what it held back.
            if not items or not body.get("more"):
                return records

    async def get(self, kind: str, object_id: str, includes: Sequence[str] = ()) -> Record:
        params = {"include": ",".join(includes)} if includes else None
        body = await self._request("GET", f"/v1/objects/{kind}/{object_id}", params=params)
        return self._object(body)

    async def save(self, kind: str, record: Record) -> Record:
        fields = {key: value for key, value in record.items() if key != "id"}
        object_id = record.get("id")
        if object_id:
            body = await self._request("PATCH", f"/v1/objects/{kind}/{object_id}", payload={"fields": fields})
        else:
            body = await self._request("POST", f"/v1/objects/{kind}", payload={"fields": fields})
        saved = self._object(body)
        if self._user is not None and saved.get("id") == self._user.id and "identifier" in saved:
            self._user = User.from_record(saved)
        return saved

    async def destroy(self, kind: str, object_id: str) -> None:
        await self._request("DELETE", f"/v1/objects/{kind}/{object_id}")

    async def upload_file(self, data: bytes, name: str) -> FileRef:
        body = await self._request(
            "POST",
            "/v1/files",
            data=data,
            headers={"Content-Type": "application/octet-stream", "X-File-Name": name},
        )
        ref = FileRef.from_record(body.get("file"))
        if ref is None:
            raise TransientError("upload response missing file")
        return ref

    @staticmethod
    def _object(body: Dict[str, Any]) -> Record:
        record = body.get("object")
        if not isinstance(record, dict):
            raise TransientError("response missing object")
        return record

    async def _expect_frame(self, ws: aiohttp.ClientWebSocketResponse, expected: str) -> Dict[str, Any]:
        msg = await ws.receive(timeout=self.timeout_s)
        if msg.type != aiohttp.WSMsgType.TEXT:
            raise RealtimeUnavailableError("realtime channel closed during handshake")
        frame = msg.json()
        if frame.get("t") == "error":
            body = frame.get("body") or {}
            if body.get("code") == SessionInvalidError.code:
                raise SessionInvalidError(str(body.get("message") or ""))
            raise error_from_payload(400, body)
        if frame.get("t") != expected:
            raise RealtimeUnavailableError(f"unexpected frame {frame.get('t')!r}")
        return frame

    async def subscribe(self, query: Query, callback: ChangeCallback) -> Subscription:
        if not self.supports_realtime:
            raise RealtimeUnavailableError("realtime disabled for this client")
        if self._token is None:
            raise SessionInvalidError("not signed in")
        try:
            ws = await self._client().ws_connect(_build_url(self.base_url, "/v1/ws"), heartbeat=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise RealtimeUnavailableError(f"websocket connect failed: {exc}") from exc

        self._sub_counter += 1
        sub_id = f"sub-{self._sub_counter}"
        try:
            await ws.send_json({"v": 1, "t": "session.start", "id": "start", "body": {"session_token": self._token}})
            await self._expect_frame(ws, "session.ready")
            await ws.send_json({"v": 1, "t": "query.subscribe", "id": sub_id, "body": {"query": query.to_wire()}})
            await self._expect_frame(ws, "query.subscribed")
        except (ChatError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            await ws.close()
            if isinstance(exc, ChatError):
                raise
            raise RealtimeUnavailableError(f"websocket handshake failed: {exc}") from exc
        logger.debug("subscribed %s to %s", sub_id, query.kind)
        return _WebSocketSubscription(ws, sub_id, callback)

    async def close(self) -> None:
        http, self._http = self._http, None
        if http is not None and not http.closed:
            await http.close()
