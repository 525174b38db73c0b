"""Serving an MCP server over standard input and output, one JSON message per line."""

from __future__ import annotations

import json
import logging
import queue
import signal
import sys
import threading
from typing import Any, Callable, IO

from .dispatch import handle_message
from .protocol import PARSE_ERROR, Context, MCPError, make_error_response
from .server import MCPServer
from .sessions import ClientSession, with_session

ContextFunc = Callable[[Context], Context]

_EOF = object()
_POLL = 0.05


class StdioSession(ClientSession):
    """The single client session of a stdio server."""

    supports_tools = False

    def __init__(self, queue_size: int = 100) -> None:
        super().__init__("stdio", queue_size=queue_size)


def _read_lines(stdin: IO[Any], lines: queue.Queue) -> None:
    try:
        while True:
            line = stdin.readline()
            if isinstance(line, (bytes, bytearray)):
                line = bytes(line).decode("utf-8", errors="replace")
            # A final line without its newline is dropped, like one cut off at EOF.
            if not line or not line.endswith("\n"):
                break
            lines.put(line)
    except Exception as exc:  # reported by the listening thread
        lines.put(exc)
        return
    lines.put(_EOF)


class StdioServer:
    """Runs an MCPServer over a pair of line-oriented streams."""

    def __init__(
        self,
        server: MCPServer,
        *,
        error_logger: logging.Logger | None = None,
        context_func: ContextFunc | None = None,
    ) -> None:
        self.server = server
        self.error_logger = error_logger or logging.getLogger(__name__)
        self.context_func = context_func
        self.session = StdioSession()
        self._write_lock = threading.Lock()

    def _write(self, message: dict[str, Any], writer: IO[Any]) -> None:
        try:
            text = json.dumps(message, separators=(",", ":")) + "\n"
        except (TypeError, ValueError) as exc:
            raise MCPError(f"failed to encode message: {exc}") from exc
        with self._write_lock:
            try:
                writer.write(text)
            except TypeError:
                writer.write(text.encode("utf-8"))
            flush = getattr(writer, "flush", None)
            if callable(flush):
                flush()

    def _forward_notifications(self, writer: IO[Any], done: threading.Event) -> None:
        while not done.is_set():
            notification = self.session.next_notification(timeout=_POLL)
            if notification is None:
                continue
            try:
                self._write(notification, writer)
            except Exception as exc:
                self.error_logger.error("Error writing notification: %s", exc)

    def listen(
        self,
        stdin: IO[Any],
        stdout: IO[Any],
        stop_event: threading.Event | None = None,
    ) -> None:
        """Serve messages from ``stdin`` until EOF or until ``stop_event`` is set."""
        stop = stop_event or threading.Event()
        self.server.register_session(self.session)
        done = threading.Event()
        try:
            context = with_session(Context(), self.session)
            if self.context_func is not None:
                context = self.context_func(context)

            notifier = threading.Thread(
                target=self._forward_notifications, args=(stdout, done), daemon=True
            )
            notifier.start()
            lines: queue.Queue = queue.Queue()
            threading.Thread(target=_read_lines, args=(stdin, lines), daemon=True).start()

            while not stop.is_set():
                try:
                    item = lines.get(timeout=_POLL)
                except queue.Empty:
                    continue
                if item is _EOF:
                    return
                if isinstance(item, Exception):
                    self.error_logger.error("Error reading input: %s", item)
                    raise item
                try:
                    self.process_message(context, item, stdout)
                except Exception as exc:
                    self.error_logger.error("Error handling message: %s", exc)
                    raise
        finally:
            done.set()
            self.server.unregister_session(self.session.session_id)

    def process_message(self, context: Context, line: str, writer: IO[Any]) -> None:
        """Handle one input line and write the reply, if any, to ``writer``."""
        if not line:
            return
        try:
            message = json.loads(line)
        except ValueError:
            self._write(make_error_response(None, PARSE_ERROR, "Parse error"), writer)
            return
        response = handle_message(self.server, message, context)
        if response is None:
            return
        try:
            self._write(response, writer)
        except Exception as exc:
            raise MCPError(f"failed to write response: {exc}") from exc


def serve_stdio(
    server: MCPServer,
    *,
    error_logger: logging.Logger | None = None,
    context_func: ContextFunc | None = None,
) -> None:
    """Serve ``server`` on the process's stdin and stdout until EOF, SIGINT or SIGTERM."""
    stdio = StdioServer(server, error_logger=error_logger, context_func=context_func)
    stop = threading.Event()
    previous: dict[int, Any] = {}
    if threading.current_thread() is threading.main_thread():
        for signum in (signal.SIGTERM, signal.SIGINT):
            previous[signum] = signal.signal(signum, lambda *_: stop.set())
    try:
        stdio.listen(sys.stdin, sys.stdout, stop)
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)