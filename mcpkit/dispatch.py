"""Routing of incoming JSON-RPC messages to the server's request handlers."""

from __future__ import annotations

import json
from typing import Any, Callable

from .protocol import (
    INVALID_REQUEST,
    JSONRPC_VERSION,
    METHOD_INITIALIZE,
    METHOD_NOT_FOUND,
    METHOD_PING,
    METHOD_PROMPTS_GET,
    METHOD_PROMPTS_LIST,
    METHOD_RESOURCES_LIST,
    METHOD_RESOURCES_READ,
    METHOD_RESOURCES_TEMPLATES_LIST,
    METHOD_SET_LOG_LEVEL,
    METHOD_TOOLS_CALL,
    METHOD_TOOLS_LIST,
    PARSE_ERROR,
    Context,
    RequestError,
    UnparsableMessageError,
    make_error_response,
    make_response,
)
from .server import MCPServer

_SERVER_KEY = object()

_Handler = Callable[[MCPServer, Context, dict], Any]
_Check = Callable[[MCPServer], bool]


def _has_logging(server: MCPServer) -> bool:
    return bool(server.logging)


def _has_resources(server: MCPServer) -> bool:
    return server.resource_capabilities is not None


def _has_prompts(server: MCPServer) -> bool:
    return server.prompt_capabilities is not None


def _has_tools(server: MCPServer) -> bool:
    return server.tool_capabilities is not None


# method -> (handler, required capability as (name, check) or None, string params)
_ROUTES: dict[str, tuple[_Handler, tuple[str, _Check] | None, tuple[str, ...]]] = {
    METHOD_INITIALIZE: (MCPServer.handle_initialize, None, ("protocolVersion",)),
    METHOD_PING: (MCPServer.handle_ping, None, ()),
    METHOD_SET_LOG_LEVEL: (MCPServer.handle_set_level, ("logging", _has_logging), ("level",)),
    METHOD_RESOURCES_LIST: (
        MCPServer.handle_list_resources,
        ("resources", _has_resources),
        ("cursor",),
    ),
    METHOD_RESOURCES_TEMPLATES_LIST: (
        MCPServer.handle_list_resource_templates,
        ("resources", _has_resources),
        ("cursor",),
    ),
    METHOD_RESOURCES_READ: (
        MCPServer.handle_read_resource,
        ("resources", _has_resources),
        ("uri",),
    ),
    METHOD_PROMPTS_LIST: (MCPServer.handle_list_prompts, ("prompts", _has_prompts), ("cursor",)),
    METHOD_PROMPTS_GET: (MCPServer.handle_get_prompt, ("prompts", _has_prompts), ("name",)),
    METHOD_TOOLS_LIST: (MCPServer.handle_list_tools, ("tools", _has_tools), ("cursor",)),
    METHOD_TOOLS_CALL: (MCPServer.handle_call_tool, ("tools", _has_tools), ("name",)),
}


def server_from_context(context: Context) -> MCPServer | None:
    """Return the server that is handling the message carried by ``context``."""
    server = context.value(_SERVER_KEY)
    return server if isinstance(server, MCPServer) else None


def _decode(message: Any) -> Any:
    if isinstance(message, (bytes, bytearray)):
        message = bytes(message).decode("utf-8")
    if isinstance(message, str):
        message = json.loads(message)
    return message


def _check_params(message: dict, string_fields: tuple[str, ...]) -> None:
    params = message.get("params")
    if params is None:
        return
    if not isinstance(params, dict):
        raise ValueError("params must be an object")
    for key in string_fields:
        value = params.get(key)
        if value is not None and not isinstance(value, str):
            raise ValueError(f"field {key!r} must be a string")


def handle_message(
    server: MCPServer, message: Any, context: Context | None = None
) -> dict[str, Any] | None:
    """Handle one JSON-RPC message and return the reply, or None when none is due.

    ``message`` may be raw JSON (str or bytes) or an already decoded dict.
    """
    context = (context or Context()).with_value(_SERVER_KEY, server)

    try:
        message = _decode(message)
    except (ValueError, UnicodeDecodeError):
        return make_error_response(None, PARSE_ERROR, "Failed to parse message")
    if (
        not isinstance(message, dict)
        or not isinstance(message.get("jsonrpc", ""), str)
        or not isinstance(message.get("method", ""), str)
    ):
        return make_error_response(None, PARSE_ERROR, "Failed to parse message")

    request_id = message.get("id")
    if message.get("jsonrpc") != JSONRPC_VERSION:
        return make_error_response(request_id, INVALID_REQUEST, "Invalid JSON-RPC version")

    if request_id is None:
        server.handle_notification(context, message)
        return None

    if message.get("result") is not None:
        # A reply to a request the server sent, such as a keep-alive ping.
        return None

    method = message.get("method", "")
    route = _ROUTES.get(method)
    if route is None:
        return make_error_response(request_id, METHOD_NOT_FOUND, f"Method {method} not found")
    handler, capability, string_fields = route

    try:
        if capability is not None:
            name, check = capability
            if not check(server):
                raise RequestError(request_id, METHOD_NOT_FOUND, f"{name} not supported")
        try:
            _check_params(message, string_fields)
        except ValueError as exc:
            raise RequestError(
                request_id, INVALID_REQUEST, UnparsableMessageError(message, method, exc)
            ) from exc
        result = handler(server, context, message)
    except RequestError as exc:
        return exc.to_response()
    return make_response(request_id, result)