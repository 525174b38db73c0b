"""JSON-RPC message shapes, protocol data types and errors shared by the server."""

from __future__ import annotations

import base64
import binascii
import re
from bisect import bisect_right
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Hashable, Iterable, Sequence
from urllib.parse import unquote

JSONRPC_VERSION = "2.0"
LATEST_PROTOCOL_VERSION = "2025-03-26"
VALID_PROTOCOL_VERSIONS = ("2024-11-05", "2025-03-26")

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
RESOURCE_NOT_FOUND = -32002

METHOD_INITIALIZE = "initialize"
METHOD_PING = "ping"
METHOD_SET_LOG_LEVEL = "logging/setLevel"
METHOD_RESOURCES_LIST = "resources/list"
METHOD_RESOURCES_TEMPLATES_LIST = "resources/templates/list"
METHOD_RESOURCES_READ = "resources/read"
METHOD_PROMPTS_LIST = "prompts/list"
METHOD_PROMPTS_GET = "prompts/get"
METHOD_TOOLS_LIST = "tools/list"
METHOD_TOOLS_CALL = "tools/call"

NOTIFICATION_RESOURCES_LIST_CHANGED = "notifications/resources/list_changed"
NOTIFICATION_PROMPTS_LIST_CHANGED = "notifications/prompts/list_changed"
NOTIFICATION_TOOLS_LIST_CHANGED = "notifications/tools/list_changed"


class MCPError(Exception):
    """Base class for errors raised by this package."""


class RequestError(MCPError):
    """An error tied to a request that can be reported as a JSON-RPC error."""

    def __init__(self, request_id: Any, code: int, error: BaseException | str) -> None:
        self.request_id = request_id
        self.code = code
        self.error = error
        super().__init__(f"request error: {error}")
        if isinstance(error, BaseException):
            self.__cause__ = error

    def to_response(self) -> dict[str, Any]:
        """Return the JSON-RPC error message for this error."""
        return make_error_response(self.request_id, self.code, str(self.error))


class UnparsableMessageError(MCPError):
    """Raised when a request body cannot be decoded into its request type."""

    def __init__(self, raw_message: Any, method: str, error: BaseException | str) -> None:
        self.raw_message = raw_message
        self.method = method
        self.error = error
        super().__init__(f"unparsable {method} request: {error}")
        if isinstance(error, BaseException):
            self.__cause__ = error


class DynamicPathConfigError(MCPError):
    """Raised when a static-path operation is used while a dynamic base path is set."""

    def __init__(self, method: str) -> None:
        self.method = method
        super().__init__(
            f"{method} cannot be used with dynamic_base_path; "
            "mount the SSE and message handlers yourself"
        )


class Context:
    """An immutable bag of request-scoped values."""

    __slots__ = ("_values",)

    def __init__(self, values: dict[Hashable, Any] | None = None) -> None:
        self._values = dict(values or {})

    def with_value(self, key: Hashable, value: Any) -> "Context":
        """Return a new context holding ``value`` under ``key``."""
        values = dict(self._values)
        values[key] = value
        return Context(values)

    def value(self, key: Hashable) -> Any:
        """Return the value stored under ``key``, or None."""
        return self._values.get(key)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._values

    def __repr__(self) -> str:
        return f"Context({self._values!r})"


class LoggingLevel(str, Enum):
    """Log levels a client may request."""

    DEBUG = "debug"
    INFO = "info"
    NOTICE = "notice"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"
    ALERT = "alert"
    EMERGENCY = "emergency"


def _default_input_schema() -> dict[str, Any]:
    return {"type": "object", "properties": {}}


@dataclass
class Tool:
    """A tool the server exposes to clients."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=_default_input_schema)
    annotations: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name}
        if self.description:
            data["description"] = self.description
        data["inputSchema"] = self.input_schema
        if self.annotations:
            data["annotations"] = self.annotations
        return data


@dataclass
class Prompt:
    """A prompt template the server offers."""

    name: str
    description: str = ""
    arguments: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name}
        if self.description:
            data["description"] = self.description
        if self.arguments:
            data["arguments"] = list(self.arguments)
        return data


@dataclass
class Resource:
    """A concrete resource addressed by URI."""

    uri: str
    name: str
    description: str = ""
    mime_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"uri": self.uri, "name": self.name}
        if self.description:
            data["description"] = self.description
        if self.mime_type:
            data["mimeType"] = self.mime_type
        return data


_EXPRESSION = re.compile(r"\{([^}]*)\}")
_UNRESERVED = r"(?:[A-Za-z0-9\-._~]|%[0-9A-Fa-f]{2})"
_RESERVED = r"(?:[A-Za-z0-9\-._~:/?#\[\]@!$&'()*+,;=]|%[0-9A-Fa-f]{2})"

# operator -> (prefix, separator, named, allow reserved characters)
_OPERATORS: dict[str, tuple[str, str, bool, bool]] = {
    "": ("", ",", False, False),
    "+": ("", ",", False, True),
    "#": ("#", ",", False, True),
    ".": (".", ".", False, False),
    "/": ("/", "/", False, False),
    ";": (";", ";", True, False),
    "?": ("?", "&", True, False),
    "&": ("&", "&", True, False),
}


class URITemplate:
    """An RFC 6570 URI template that can match URIs and extract variables."""

    def __init__(self, raw: str) -> None:
        self._raw = raw
        self._groups: list[tuple[str, str]] = []
        parts: list[str] = []
        pos = 0
        for match in _EXPRESSION.finditer(raw):
            parts.append(re.escape(raw[pos:match.start()]))
            parts.append(self._expression(match.group(1)))
            pos = match.end()
        tail = raw[pos:]
        if "{" in tail or "}" in tail:
            raise ValueError(f"invalid URI template: {raw!r}")
        parts.append(re.escape(tail))
        self._regex = re.compile("".join(parts))

    def _expression(self, body: str) -> str:
        operator = body[0] if body and body[0] in "+#./;?&" else ""
        prefix, separator, named, reserved = _OPERATORS[operator]
        value = _RESERVED if reserved else _UNRESERVED
        pieces = []
        for spec in body[len(operator):].split(","):
            name = spec.rstrip("*").split(":", 1)[0]
            if not name:
                raise ValueError(f"invalid URI template: {self._raw!r}")
            group = f"g{len(self._groups)}"
            self._groups.append((group, name))
            capture = f"(?P<{group}>{value}*)"
            pieces.append(f"{re.escape(name)}={capture}" if named else capture)
        pattern = pieces[0] + "".join(
            f"(?:{re.escape(separator)}{piece})?" for piece in pieces[1:]
        )
        if prefix:
            return f"(?:{re.escape(prefix)}{pattern})?"
        return pattern

    @property
    def raw(self) -> str:
        return self._raw

    def matches(self, uri: str) -> bool:
        """Tell whether ``uri`` fits this template."""
        return self._regex.fullmatch(uri) is not None

    def match(self, uri: str) -> dict[str, str] | None:
        """Return the template variables found in ``uri``, or None if it does not fit."""
        found = self._regex.fullmatch(uri)
        if found is None:
            return None
        return {
            name: unquote(found.group(group))
            for group, name in self._groups
            if found.group(group) is not None
        }

    def __eq__(self, other: object) -> bool:
        if isinstance(other, URITemplate):
            return self._raw == other._raw
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._raw)

    def __str__(self) -> str:
        return self._raw

    def __repr__(self) -> str:
        return f"URITemplate({self._raw!r})"


@dataclass
class ResourceTemplate:
    """A family of resources described by a URI template."""

    uri_template: URITemplate | str
    name: str
    description: str = ""
    mime_type: str | None = None

    def __post_init__(self) -> None:
        if isinstance(self.uri_template, str):
            self.uri_template = URITemplate(self.uri_template)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"uriTemplate": str(self.uri_template), "name": self.name}
        if self.description:
            data["description"] = self.description
        if self.mime_type:
            data["mimeType"] = self.mime_type
        return data


@dataclass
class ServerTool:
    """A tool together with the callable that serves it."""

    tool: Tool
    handler: Callable[..., Any]


def make_response(request_id: Any, result: Any) -> dict[str, Any]:
    """Build a JSON-RPC success response."""
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def make_error_response(request_id: Any, code: int, message: str) -> dict[str, Any]:
    """Build a JSON-RPC error response."""
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": {"code": code, "message": message},
    }


def make_notification(method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    """Build a JSON-RPC notification."""
    return {"jsonrpc": JSONRPC_VERSION, "method": method, "params": dict(params or {})}


def negotiate_protocol_version(client_version: str) -> str:
    """Use the client's protocol version if supported, else the latest one."""
    if client_version in VALID_PROTOCOL_VERSIONS:
        return client_version
    return LATEST_PROTOCOL_VERSION


def paginate(
    items: Sequence[Any], cursor: str | None, limit: int | None
) -> tuple[list[Any], str | None]:
    """Return one page of name-sorted ``items`` and the cursor for the next page.

    Raises ValueError if the cursor is not valid base64.
    """
    start = 0
    if cursor:
        try:
            decoded = base64.b64decode(cursor, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"illegal cursor {cursor!r}: {exc}") from exc
        after = decoded.decode("utf-8", errors="surrogateescape")
        names: Iterable[str] = [item.name for item in items]
        start = bisect_right(list(names), after)
    end = len(items)
    if limit is not None and len(items) > start + limit:
        end = start + limit
    page = list(items[start:end])
    next_cursor = None
    if limit is not None and page and len(page) >= limit:
        last = page[-1].name.encode("utf-8", errors="surrogateescape")
        next_cursor = base64.b64encode(last).decode("ascii")
    return page, next_cursor