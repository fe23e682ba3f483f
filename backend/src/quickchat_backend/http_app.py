from __future__ import annotations

import asyncio
import logging
import secrets
import weakref
from typing import Any, Dict, Union

from aiohttp import WSCloseCode, WSMsgType, web

from quickchat.errors import ChatError, ValidationError
from quickchat.query import KIND_USER, Query

from .accounts import AccountStore
from .config import ServerConfig
from .files import FileStore
from .hub import Subscription, SubscriptionHub
from .objects import ObjectStore
from .sessions import Session, SQLiteSessionStore
from .sqlite_backend import MEMORY_DB, SQLiteBackend

logger = logging.getLogger(__name__)

_STATUS_BY_CODE = {
    "invalid_session": 401,
    "invalid_credentials": 401,
    "forbidden": 403,
    "not_found": 404,
    "invalid_request": 400,
}


class Runtime:
    def __init__(
        self,
        *,
        backend: SQLiteBackend,
        objects: ObjectStore,
        accounts: AccountStore,
        sessions: SQLiteSessionStore,
        files: FileStore,
        hub: SubscriptionHub,
        config: ServerConfig,
    ) -> None:
        self.backend = backend
        self.objects = objects
        self.accounts = accounts
        self.sessions = sessions
        self.files = files
        self.hub = hub
        self.config = config
        self.sockets: weakref.WeakSet[web.WebSocketResponse] = weakref.WeakSet()


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _unauthorized() -> web.Response:
    return _error("invalid_session", "invalid session_token", 401)


def _invalid_request(message: str) -> web.Response:
    return _error("invalid_request", message, 400)


def _chat_error(exc: ChatError) -> web.Response:
    return _error(exc.code, exc.message, _STATUS_BY_CODE.get(exc.code, 500))


def _authenticate_request(request: web.Request) -> Session | None:
    runtime: Runtime = request.app["runtime"]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    session_token = auth_header[len("Bearer ") :].strip()
    return runtime.sessions.get_by_session(session_token)


async def _json_body(request: web.Request) -> Dict[str, Any] | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _auth_response(runtime: Runtime, user: Dict[str, Any]) -> web.Response:
    session = runtime.sessions.create(user["id"])
    return web.json_response({"user": user, "session_token": session.session_token, "expires_at": session.expires_at_ms})


async def handle_signup(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    identifier = body.get("identifier")
    secret = body.get("secret")
    attributes = body.get("attributes") or {}
    if not isinstance(identifier, str) or not identifier or not isinstance(secret, str) or not secret:
        return _invalid_request("identifier and secret required")
    if not isinstance(attributes, dict):
        return _invalid_request("attributes must be an object")
    if runtime.accounts.exists(identifier):
        return _error("invalid_request", "identifier already registered", 409)
    try:
        user = runtime.objects.create_user(identifier, attributes)
    except ChatError as exc:
        return _chat_error(exc)
    runtime.accounts.register(identifier, secret, user["id"])
    logger.info("signed up %s as %s", identifier, user["id"])
    return _auth_response(runtime, user)


async def handle_login(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    identifier = body.get("identifier")
    secret = body.get("secret")
    if not isinstance(identifier, str) or not isinstance(secret, str):
        return _invalid_request("identifier and secret required")
    user_id = runtime.accounts.verify(identifier, secret)
    user = runtime.objects.lookup(KIND_USER, user_id) if user_id is not None else None
    if user is None:
        return _error("invalid_credentials", "invalid identifier/secret", 401)
    return _auth_response(runtime, user)


async def handle_logout(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    runtime.sessions.invalidate(session)
    return web.json_response({"status": "ok"})


async def handle_me(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    user = runtime.objects.lookup(KIND_USER, session.user_id)
    if user is None:
        return _unauthorized()
    return web.json_response({"user": user})


async def handle_query(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    try:
        query = Query.from_wire(body.get("query"))
    except ValueError as exc:
        return _invalid_request(str(exc))
    try:
        items, more = runtime.objects.query_page(query, session.user_id)
    except ChatError as exc:
        return _chat_error(exc)
    return web.json_response({"items": items, "more": more})


async def handle_object_get(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    raw_include = request.query.get("include", "")
    includes = [name for name in raw_include.split(",") if name]
    try:
        record = runtime.objects.get(
            request.match_info["kind"], request.match_info["object_id"], session.user_id, includes
        )
    except ChatError as exc:
        return _chat_error(exc)
    return web.json_response({"object": record})


async def _fields(request: web.Request) -> Dict[str, Any]:
    body = await _json_body(request)
    fields = body.get("fields") if body is not None else None
    if not isinstance(fields, dict):
        raise ValidationError("fields object required")
    return fields


async def handle_object_create(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    try:
        record = runtime.objects.create(request.match_info["kind"], await _fields(request), session.user_id)
    except ChatError as exc:
        return _chat_error(exc)
    return web.json_response({"object": record})


async def handle_object_update(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    try:
        record = runtime.objects.update(
            request.match_info["kind"], request.match_info["object_id"], await _fields(request), session.user_id
        )
    except ChatError as exc:
        return _chat_error(exc)
    return web.json_response({"object": record})


async def handle_object_delete(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    try:
        runtime.objects.destroy(request.match_info["kind"], request.match_info["object_id"], session.user_id)
    except ChatError as exc:
        return _chat_error(exc)
    return web.json_response({"status": "ok"})


async def handle_file_upload(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    name = request.headers.get("X-File-Name", "")
    if not name.strip():
        return _invalid_request("X-File-Name header required")
    data = await request.read()
    if not data:
        return _invalid_request("empty upload")
    if len(data) > runtime.config.max_file_bytes:
        return _error("invalid_request", f"file exceeds {runtime.config.max_file_bytes} bytes", 413)
    stored_name = runtime.files.put(data, name, request.content_type or "application/octet-stream")
    url = f"{request.scheme}://{request.host}/v1/files/{stored_name}"
    return web.json_response({"file": {"name": stored_name, "url": url}})


async def handle_file_download(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    stored = runtime.files.get(request.match_info["name"])
    if stored is None:
        return _error("not_found", "file not found", 404)
    return web.Response(body=stored.data, content_type=stored.content_type)


def create_app(
    *,
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    db_path: str | None = None,
    config: ServerConfig | None = None,
) -> web.Application:
    config = config or ServerConfig()
    backend = SQLiteBackend(db_path or MEMORY_DB)
    hub = SubscriptionHub()
    runtime = Runtime(
        backend=backend,
        objects=ObjectStore(backend, hub, config),
        accounts=AccountStore(backend),
        sessions=SQLiteSessionStore(backend, ttl_ms=config.session_ttl_ms),
        files=FileStore(backend),
        hub=hub,
        config=config,
    )
    app = web.Application(client_max_size=config.max_file_bytes + 64 * 1024)
    app["runtime"] = runtime
    app["ws_config"] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/users", handle_signup)
    app.router.add_get("/v1/users/me", handle_me)
    app.router.add_post("/v1/login", handle_login)
    app.router.add_post("/v1/logout", handle_logout)
    app.router.add_post("/v1/query", handle_query)
    app.router.add_post("/v1/objects/{kind}", handle_object_create)
    app.router.add_get("/v1/objects/{kind}/{object_id}", handle_object_get)
    app.router.add_patch("/v1/objects/{kind}/{object_id}", handle_object_update)
    app.router.add_delete("/v1/objects/{kind}/{object_id}", handle_object_delete)
    app.router.add_post("/v1/files", handle_file_upload)
    app.router.add_get("/v1/files/{name}", handle_file_download)
    app.router.add_get("/v1/ws", websocket_handler)

    async def close_sockets(_: web.Application) -> None:
        for ws in list(runtime.sockets):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"server shutdown")

    async def close_db(_: web.Application) -> None:
        backend.close()

    app.on_shutdown.append(close_sockets)
    app.on_cleanup.append(close_db)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime: Runtime = request.app["runtime"]
    ws_config: dict[str, Any] = request.app["ws_config"]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)
    runtime.sockets.add(ws)

    last_activity = asyncio.get_event_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Union[dict, None]] = asyncio.Queue(maxsize=1000)
    subscriptions: Dict[str, Subscription] = {}
    session: Session | None = None
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_event_loop().time()
        missed_heartbeats = 0

    def enqueue_frame(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                now = asyncio.get_event_loop().time()
                if now - last_activity >= ws_config["ping_interval_s"]:
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            payload = first_msg.json()
        except ValueError:
            await ws.close(code=1002, message=b"invalid json")
            return ws

        if payload.get("v") != 1:
            await ws.send_json(_error_frame("invalid_request", "unsupported version", request_id=payload.get("id")))
            await ws.close()
            return ws
        if payload.get("t") != "session.start":
            await ws.send_json(
                _error_frame("invalid_request", "first frame must start session", request_id=payload.get("id"))
            )
            await ws.close()
            return ws

        body = payload.get("body") or {}
        session_token = body.get("session_token")
        if isinstance(session_token, str):
            session = runtime.sessions.get_by_session(session_token)
        if session is None:
            await ws.send_json(
                _error_frame("invalid_session", "invalid session_token", request_id=payload.get("id"))
            )
            await ws.close()
            return ws

        mark_activity()
        await ws.send_json(
            {
                "v": 1,
                "t": "session.ready",
                "id": payload.get("id"),
                "body": {"user_id": session.user_id, "expires_at": session.expires_at_ms},
            }
        )

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    await ws.send_json(_error_frame("invalid_request", "malformed json"))
                    continue

                mark_activity()
                if frame.get("v") != 1:
                    await ws.send_json(_error_frame("invalid_request", "unsupported version", request_id=frame.get("id")))
                    continue

                frame_type = frame.get("t")
                body = frame.get("body") or {}

                if frame_type == "ping":
                    await ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
                elif frame_type == "pong":
                    continue
                elif frame_type == "query.subscribe":
                    try:
                        query = Query.from_wire(body.get("query"))
                    except ValueError as exc:
                        await ws.send_json(_error_frame("invalid_request", str(exc), request_id=frame.get("id")))
                        continue
                    sub_id = str(frame.get("id") or secrets.token_hex(4))
                    if sub_id in subscriptions:
                        await ws.send_json(
                            _error_frame("invalid_request", "subscription id in use", request_id=frame.get("id"))
                        )
                        continue

                    def push(op: str, kind: str, record: dict, sub_id: str = sub_id) -> None:
                        enqueue_frame(
                            {
                                "v": 1,
                                "t": "object.event",
                                "body": {"sub_id": sub_id, "op": op, "kind": kind, "object": record},
                            }
                        )

                    subscriptions[sub_id] = runtime.hub.subscribe(session.user_id, query, push)
                    await ws.send_json({"v": 1, "t": "query.subscribed", "id": frame.get("id"), "body": {"sub_id": sub_id}})
                elif frame_type == "query.unsubscribe":
                    subscription = subscriptions.pop(str(body.get("sub_id")), None)
                    if subscription is not None:
                        runtime.hub.unsubscribe(subscription)
                else:
                    await ws.send_json(
                        _error_frame("invalid_request", "unknown frame type", request_id=frame.get("id"))
                    )
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        runtime.sockets.discard(ws)
        heartbeat_task.cancel()
        writer_task.cancel()
        for subscription in subscriptions.values():
            runtime.hub.unsubscribe(subscription)
        if not outbound.empty():
            try:
                outbound.put_nowait(None)
            except asyncio.QueueFull:
                pass
        else:
            outbound.put_nowait(None)
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
