"""Client sessions and the registry the server uses to reach them."""

from __future__ import annotations

import queue
import threading
import uuid
from typing import Any, Callable, ClassVar, Iterator

from .protocol import Context, LoggingLevel, MCPError, ServerTool, make_notification


class SessionExistsError(MCPError):
    """Raised when a session with the same id is already registered."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"session already exists: {session_id}")


class SessionNotFoundError(MCPError):
    """Raised when no session has the given id."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"session not found: {session_id}")


class SessionNotInitializedError(MCPError):
    """Raised when a session has not finished initialization."""

    def __init__(self, session_id: str | None = None) -> None:
        self.session_id = session_id
        super().__init__("session not properly initialized")


class NotificationChannelBlockedError(MCPError):
    """Raised when a session's notification queue is full."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"notification channel blocked for session {session_id}")


class ClientSession:
    """A connected client: its identity, state and outgoing notification queue."""

    supports_tools: ClassVar[bool] = True
    supports_logging: ClassVar[bool] = True

    def __init__(
        self,
        session_id: str | None = None,
        *,
        headers: dict[str, str] | None = None,
        queue_size: int = 100,
    ) -> None:
        self.session_id = session_id or str(uuid.uuid4())
        self.headers = dict(headers or {})
        self.client_info: dict[str, Any] | None = None
        self._lock = threading.Lock()
        self._initialized = threading.Event()
        self._log_level: LoggingLevel | None = None
        self._tools: dict[str, ServerTool] = {}
        self._notifications: queue.Queue[dict[str, Any]] = queue.Queue(maxsize=queue_size)

    @property
    def initialized(self) -> bool:
        return self._initialized.is_set()

    def initialize(self) -> None:
        """Mark the session ready for notifications, with the default log level."""
        self._log_level = LoggingLevel.ERROR
        self._initialized.set()

    @property
    def log_level(self) -> LoggingLevel:
        return self._log_level or LoggingLevel.ERROR

    @log_level.setter
    def log_level(self, level: LoggingLevel | str) -> None:
        self._log_level = LoggingLevel(level)

    @property
    def tools(self) -> dict[str, ServerTool]:
        """A copy of the tools that belong to this session only."""
        with self._lock:
            return dict(self._tools)

    @tools.setter
    def tools(self, tools: dict[str, ServerTool]) -> None:
        with self._lock:
            self._tools = dict(tools)

    def push_notification(self, notification: dict[str, Any]) -> None:
        """Queue a notification without blocking; raise if the queue is full."""
        try:
            self._notifications.put_nowait(notification)
        except queue.Full:
            raise NotificationChannelBlockedError(self.session_id) from None

    def next_notification(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Take the next queued notification, or None once ``timeout`` runs out."""
        try:
            return self._notifications.get(timeout=timeout)
        except queue.Empty:
            return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(session_id={self.session_id!r})"


BlockedCallback = Callable[[str, str, Exception], None]


class SessionRegistry:
    """Thread-safe store of active sessions keyed by session id."""

    def __init__(self, on_blocked: BlockedCallback | None = None) -> None:
        self._sessions: dict[str, ClientSession] = {}
        self._lock = threading.Lock()
        self.on_blocked = on_blocked

    def register(self, session: ClientSession) -> None:
        with self._lock:
            if session.session_id in self._sessions:
                raise SessionExistsError(session.session_id)
            self._sessions[session.session_id] = session

    def unregister(self, session_id: str) -> ClientSession | None:
        """Remove a session and return it, or None if it was not registered."""
        with self._lock:
            return self._sessions.pop(session_id, None)

    def get(self, session_id: str) -> ClientSession:
        with self._lock:
            try:
                return self._sessions[session_id]
            except KeyError:
                raise SessionNotFoundError(session_id) from None

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __iter__(self) -> Iterator[ClientSession]:
        with self._lock:
            snapshot = list(self._sessions.values())
        return iter(snapshot)

    def _report_blocked(self, session_id: str, method: str, error: Exception) -> None:
        if self.on_blocked is not None:
            self.on_blocked(session_id, method, error)

    def broadcast(self, method: str, params: dict[str, Any] | None = None) -> list[str]:
        """Send a notification to every initialized session; return the ids reached."""
        notification = make_notification(method, params)
        delivered = []
        for session in self:
            if not session.initialized:
                continue
            try:
                session.push_notification(notification)
            except NotificationChannelBlockedError as exc:
                self._report_blocked(session.session_id, method, exc)
            else:
                delivered.append(session.session_id)
        return delivered

    def send_to(
        self, session_id: str, method: str, params: dict[str, Any] | None = None
    ) -> None:
        """Send a notification to one session."""
        session = self.get(session_id)
        if not session.initialized:
            raise SessionNotInitializedError(session_id)
        try:
            session.push_notification(make_notification(method, params))
        except NotificationChannelBlockedError as exc:
            self._report_blocked(session_id, method, exc)
            raise


_SESSION_KEY = object()


def current_session(context: Context) -> ClientSession | None:
    """Return the client session carried by ``context``, if any."""
    session = context.value(_SESSION_KEY)
    return session if isinstance(session, ClientSession) else None


def with_session(context: Context, session: ClientSession) -> Context:
    """Return a context that carries ``session``."""
    return context.with_value(_SESSION_KEY, session)