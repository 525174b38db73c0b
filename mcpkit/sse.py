"""Serving an MCP server over HTTP with Server-Sent Events."""

from __future__ import annotations

import itertools
import json
import logging
import queue
import select
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable
from urllib.parse import parse_qs, urlsplit

from .dispatch import handle_message
from .protocol import (
    INVALID_PARAMS,
    INVALID_REQUEST,
    PARSE_ERROR,
    Context,
    DynamicPathConfigError,
    MCPError,
    make_error_response,
)
from .server import MCPServer
from .sessions import ClientSession, SessionNotFoundError, with_session

_log = logging.getLogger(__name__)

SSEContextFunc = Callable[[Context, BaseHTTPRequestHandler], Context]
DynamicBasePathFunc = Callable[[Any, str], str]

_POLL = 0.1
_FALLBACK_EVENT = (
    'event: message\ndata: {"error": "internal error","jsonrpc": "2.0", "id": null}\n\n'
)


def _clean_path(path: str) -> str:
    if not path:
        return "."
    rooted = path.startswith("/")
    parts: list[str] = []
    for segment in path.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if parts and parts[-1] != "..":
                parts.pop()
            elif not rooted:
                parts.append("..")
            continue
        parts.append(segment)
    joined = "/".join(parts)
    if rooted:
        return "/" + joined
    return joined or "."


def normalize_url_path(*args: str) -> str:
    """Join path elements, clean the result, and give it one leading and no trailing slash."""
    elements = [element for element in args if element]
    joined = _clean_path("/".join(elements)) if elements else ""
    if not joined.startswith("/"):
        joined = "/" + joined
    if len(joined) > 1 and joined.endswith("/"):
        joined = joined[:-1]
    return joined


def _valid_base_url(base_url: str) -> bool:
    try:
        parts = urlsplit(base_url)
    except ValueError:
        return False
    if parts.scheme not in ("http", "https"):
        return False
    host = parts.netloc.rsplit("@", 1)[-1]
    if not host or host.startswith(":"):
        return False
    return not parse_qs(parts.query, keep_blank_values=True)


def _parse_addr(addr: str) -> tuple[str, int]:
    host, _, port = addr.rpartition(":")
    try:
        return host, int(port)
    except ValueError:
        raise MCPError(f"invalid listen address: {addr!r}") from None


def _client_gone(connection: socket.socket) -> bool:
    try:
        readable, _, _ = select.select([connection], [], [], 0)
        if not readable:
            return False
        return connection.recv(1, socket.MSG_PEEK) == b""
    except (OSError, ValueError):
        return True


def _plain_error(request: BaseHTTPRequestHandler, status: int, text: str) -> None:
    body = (text + "\n").encode("utf-8")
    request.send_response(status)
    request.send_header("Content-Type", "text/plain; charset=utf-8")
    request.send_header("X-Content-Type-Options", "nosniff")
    request.send_header("Content-Length", str(len(body)))
    request.end_headers()
    request.wfile.write(body)


class SSESession(ClientSession):
    """A client connected through an SSE stream."""

    def __init__(
        self,
        session_id: str | None = None,
        *,
        headers: dict[str, str] | None = None,
        queue_size: int = 100,
    ) -> None:
        super().__init__(session_id, headers=headers, queue_size=queue_size)
        self.events: queue.Queue[str] = queue.Queue(maxsize=queue_size)
        self.done = threading.Event()
        self._request_ids = itertools.count(1)
        self._id_lock = threading.Lock()

    def next_request_id(self) -> int:
        """Return the id for the next request the server sends on this session."""
        with self._id_lock:
            return next(self._request_ids)

    def put_event(self, event: str) -> bool:
        """Queue an event, waiting for room until the session ends; tell whether it was queued."""
        while not self.done.is_set():
            try:
                self.events.put(event, timeout=_POLL)
                return True
            except queue.Full:
                continue
        return False


class SSEServer:
    """Serves an MCPServer: clients open an SSE stream and post JSON-RPC messages."""

    def __init__(
        self,
        server: MCPServer,
        *,
        base_url: str = "",
        base_path: str = "",
        dynamic_base_path: DynamicBasePathFunc | None = None,
        message_endpoint: str = "/message",
        sse_endpoint: str = "/sse",
        append_query_to_message_endpoint: bool = False,
        use_full_url_for_message_endpoint: bool = True,
        keep_alive: bool | None = None,
        keep_alive_interval: float | None = None,
        context_func: SSEContextFunc | None = None,
        http_server: ThreadingHTTPServer | None = None,
    ) -> None:
        self.server = server
        self.base_url = ""
        if not base_url or _valid_base_url(base_url):
            self.base_url = base_url.removesuffix("/")
        self.base_path = normalize_url_path(base_path) if base_path else ""
        self._dynamic_base_path: DynamicBasePathFunc | None = None
        if dynamic_base_path is not None:
            self._dynamic_base_path = lambda request, sid: normalize_url_path(
                dynamic_base_path(request, sid)
            )
        self.message_endpoint = message_endpoint
        self.sse_endpoint = sse_endpoint
        self.append_query_to_message_endpoint = append_query_to_message_endpoint
        self.use_full_url_for_message_endpoint = use_full_url_for_message_endpoint
        self.keep_alive = keep_alive if keep_alive is not None else keep_alive_interval is not None
        self.keep_alive_interval = 10.0 if keep_alive_interval is None else keep_alive_interval
        self.context_func = context_func
        self.http_server = http_server
        self._serving = False
        self._lock = threading.RLock()
        self._sessions: dict[str, SSESession] = {}

    # ---- endpoints ----------------------------------------------------

    def message_endpoint_for_client(self, request: Any, session_id: str) -> str:
        """Return the message URL a client should post to, including its session id."""
        base_path = self.base_path
        if self._dynamic_base_path is not None:
            base_path = self._dynamic_base_path(request, session_id)
        endpoint = normalize_url_path(base_path, self.message_endpoint)
        if self.use_full_url_for_message_endpoint and self.base_url:
            endpoint = self.base_url + endpoint
        return f"{endpoint}?sessionId={session_id}"

    def complete_sse_endpoint(self) -> str:
        if self._dynamic_base_path is not None:
            raise DynamicPathConfigError("complete_sse_endpoint")
        return self.base_url + normalize_url_path(self.base_path, self.sse_endpoint)

    def complete_sse_path(self) -> str:
        try:
            return urlsplit(self.complete_sse_endpoint()).path
        except (DynamicPathConfigError, ValueError):
            return normalize_url_path(self.base_path, self.sse_endpoint)

    def complete_message_endpoint(self) -> str:
        if self._dynamic_base_path is not None:
            raise DynamicPathConfigError("complete_message_endpoint")
        return self.base_url + normalize_url_path(self.base_path, self.message_endpoint)

    def complete_message_path(self) -> str:
        try:
            return urlsplit(self.complete_message_endpoint()).path
        except (DynamicPathConfigError, ValueError):
            return normalize_url_path(self.base_path, self.message_endpoint)

    # ---- request handling ---------------------------------------------

    def serve(self, request: BaseHTTPRequestHandler) -> None:
        """Route a request to the SSE or message handler by its path."""
        if self._dynamic_base_path is not None:
            _plain_error(request, 500, str(DynamicPathConfigError("serve")))
            return
        path = urlsplit(request.path).path
        if path == self.complete_sse_path():
            self.handle_sse(request)
        elif path == self.complete_message_path():
            self.handle_message(request)
        else:
            _plain_error(request, 404, "404 page not found")

    def handle_sse(self, request: BaseHTTPRequestHandler) -> None:
        """Open an SSE stream for a new session and serve it until it ends."""
        if request.command != "GET":
            _plain_error(request, 405, "Method not allowed")
            return
        session = SSESession(headers=dict(request.headers.items()))
        with self._lock:
            self._sessions[session.session_id] = session
        try:
            try:
                self.server.register_session(session)
            except MCPError as exc:
                _plain_error(request, 500, f"Session registration failed: {exc}")
                return
            try:
                self._stream(request, session)
            finally:
                self.server.unregister_session(session.session_id)
        finally:
            session.done.set()
            with self._lock:
                self._sessions.pop(session.session_id, None)

    def _stream(self, request: BaseHTTPRequestHandler, session: SSESession) -> None:
        request.send_response(200)
        request.send_header("Content-Type", "text/event-stream")
        request.send_header("Cache-Control", "no-cache")
        request.send_header("Connection", "keep-alive")
        request.send_header("Access-Control-Allow-Origin", "*")
        request.end_headers()
        request.close_connection = True

        threading.Thread(target=self._forward_notifications, args=(session,), daemon=True).start()
        if self.keep_alive:
            threading.Thread(target=self._keep_alive, args=(session,), daemon=True).start()

        endpoint = self.message_endpoint_for_client(request, session.session_id)
        query = urlsplit(request.path).query
        if self.append_query_to_message_endpoint and query:
            endpoint += "&" + query
        try:
            self._write(request, f"event: endpoint\ndata: {endpoint}\r\n\r\n")
            while not session.done.is_set():
                try:
                    event = session.events.get(timeout=_POLL)
                except queue.Empty:
                    if _client_gone(request.connection):
                        return
                    continue
                self._write(request, event)
        except OSError:
            return

    @staticmethod
    def _write(request: BaseHTTPRequestHandler, text: str) -> None:
        request.wfile.write(text.encode("utf-8"))
        request.wfile.flush()

    @staticmethod
    def _forward_notifications(session: SSESession) -> None:
        while not session.done.is_set():
            notification = session.next_notification(timeout=_POLL)
            if notification is None:
                continue
            try:
                data = json.dumps(notification, separators=(",", ":"))
            except (TypeError, ValueError):
                continue
            session.put_event(f"event: message\ndata: {data}\n\n")

    def _keep_alive(self, session: SSESession) -> None:
        while not session.done.wait(self.keep_alive_interval):
            ping = {"jsonrpc": "2.0", "id": session.next_request_id(), "method": "ping"}
            data = json.dumps(ping, separators=(",", ":"))
            if not session.put_event(f"event: message\ndata:{data}\n\n"):
                return

    def handle_message(self, request: BaseHTTPRequestHandler) -> None:
        """Accept a posted JSON-RPC message and answer it on the session's SSE stream."""
        if request.command != "POST":
            self._write_error(request, INVALID_REQUEST, "Method not allowed")
            return
        query = parse_qs(urlsplit(request.path).query)
        session_id = (query.get("sessionId") or [""])[0]
        if not session_id:
            self._write_error(request, INVALID_PARAMS, "Missing sessionId")
            return
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            self._write_error(request, INVALID_PARAMS, "Invalid session ID")
            return

        context = with_session(Context(), session)
        if self.context_func is not None:
            context = self.context_func(context, request)

        try:
            length = int(request.headers.get("Content-Length") or 0)
        except ValueError:
            length = 0
        body = request.rfile.read(length) if length > 0 else b""
        try:
            message = json.loads(body)
        except ValueError:
            self._write_error(request, PARSE_ERROR, "Parse error")
            return

        request.send_response(202)
        request.send_header("Content-Length", "0")
        request.end_headers()

        threading.Thread(
            target=self._process, args=(session, message, context), daemon=True
        ).start()

    def _process(self, session: SSESession, message: Any, context: Context) -> None:
        try:
            response = handle_message(self.server, message, context)
        except Exception:
            _log.exception("failed to handle message for session %s", session.session_id)
            return
        if response is None:
            return
        try:
            data = json.dumps(response, separators=(",", ":"))
            event = f"event: message\ndata: {data}\n\n"
        except (TypeError, ValueError) as exc:
            _log.error("failed to marshal response: %s", exc)
            event = _FALLBACK_EVENT
        if session.done.is_set():
            return
        try:
            session.events.put_nowait(event)
        except queue.Full:
            _log.warning("Event queue full for session %s", session.session_id)

    @staticmethod
    def _write_error(request: BaseHTTPRequestHandler, code: int, message: str) -> None:
        body = (json.dumps(make_error_response(None, code, message)) + "\n").encode("utf-8")
        request.send_response(400)
        request.send_header("Content-Type", "application/json")
        request.send_header("Content-Length", str(len(body)))
        request.end_headers()
        request.wfile.write(body)

    def send_event_to_session(self, session_id: str, event: Any) -> None:
        """Queue ``event`` as a message on the stream of one session."""
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        data = json.dumps(event, separators=(",", ":"))
        if session.done.is_set():
            raise MCPError("session closed")
        try:
            session.events.put_nowait(f"event: message\ndata: {data}\n\n")
        except queue.Full:
            raise MCPError("event queue full") from None

    # ---- lifecycle ----------------------------------------------------

    def _handler_class(self) -> type[BaseHTTPRequestHandler]:
        owner = self

        class _Handler(BaseHTTPRequestHandler):
            server_version = "mcpkit"

            def _route(self) -> None:
                owner.serve(self)

            do_GET = do_POST = do_PUT = do_DELETE = do_PATCH = do_OPTIONS = _route

            def log_message(self, format: str, *args: Any) -> None:
                _log.debug("%s - %s", self.address_string(), format % args)

        return _Handler

    def _make_http_server(self, address: tuple[str, int]) -> ThreadingHTTPServer:
        httpd = ThreadingHTTPServer(address, self._handler_class())
        httpd.daemon_threads = True
        httpd.block_on_close = False
        return httpd

    def start(self, addr: str) -> None:
        """Listen on ``addr`` ("host:port") and serve until shutdown."""
        address = _parse_addr(addr)
        with self._lock:
            if self.http_server is None:
                self.http_server = self._make_http_server(address)
            elif tuple(self.http_server.server_address[:2]) != address:
                bound = "%s:%s" % tuple(self.http_server.server_address[:2])
                raise MCPError(
                    f"conflicting listen address: http_server({bound!r}) vs start({addr!r})"
                )
            httpd = self.http_server
            self._serving = True
        httpd.serve_forever(poll_interval=_POLL)

    def shutdown(self) -> None:
        """Close every session and stop the HTTP server."""
        with self._lock:
            httpd = self.http_server
            serving = self._serving
            self._serving = False
            if httpd is None:
                return
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.done.set()
        if serving:
            httpd.shutdown()
        httpd.server_close()


def start_test_server(server: MCPServer, **kwargs: Any) -> SSEServer:
    """Start an SSEServer on a free local port in the background; base_url points at it."""
    sse = SSEServer(server, **kwargs)
    httpd = sse._make_http_server(("127.0.0.1", 0))
    with sse._lock:
        sse.http_server = httpd
        sse._serving = True
    host, port = httpd.server_address[:2]
    sse.base_url = f"http://{host}:{port}"
    threading.Thread(
        target=httpd.serve_forever, kwargs={"poll_interval": _POLL}, daemon=True
    ).start()
    return sse