import json

from mcpkit.dispatch import handle_message, server_from_context
from mcpkit.protocol import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    Context,
    LoggingLevel,
    ResourceTemplate,
    Tool,
)
from mcpkit.server import MCPServer
from mcpkit.sessions import ClientSession, with_session


def _request(method, params=None, request_id=1):
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def test_invalid_json_is_parse_error():
    server = MCPServer("test", "1.0.0")
    response = handle_message(server, "{not json")
    assert response["id"] is None
    assert response["error"]["code"] == PARSE_ERROR
    assert response["error"]["message"] == "Failed to parse message"


def test_non_object_is_parse_error():
    server = MCPServer("test", "1.0.0")
    response = handle_message(server, "[1, 2]")
    assert response["error"]["code"] == PARSE_ERROR


def test_wrong_version_is_invalid_request():
    server = MCPServer("test", "1.0.0")
    response = handle_message(server, {"jsonrpc": "1.0", "id": 7, "method": "ping"})
    assert response["id"] == 7
    assert response["error"]["code"] == INVALID_REQUEST
    assert response["error"]["message"] == "Invalid JSON-RPC version"


def test_notification_runs_handler_and_returns_none():
    server = MCPServer("test", "1.0.0")
    seen = []
    server.add_notification_handler(
        "notifications/initialized",
        lambda ctx, note: seen.append((server_from_context(ctx), note["method"])),
    )
    response = handle_message(
        server, {"jsonrpc": "2.0", "method": "notifications/initialized"}
    )
    assert response is None
    assert seen == [(server, "notifications/initialized")]


def test_reply_to_server_request_is_ignored():
    server = MCPServer("test", "1.0.0")
    response = handle_message(server, {"jsonrpc": "2.0", "id": 3, "result": {}})
    assert response is None


def test_unknown_method():
    server = MCPServer("test", "1.0.0")
    response = handle_message(server, _request("foo/bar"))
    assert response["error"]["code"] == METHOD_NOT_FOUND
    assert response["error"]["message"] == "Method foo/bar not found"


def test_ping_accepts_bytes():
    server = MCPServer("test", "1.0.0")
    raw = json.dumps(_request("ping", request_id=5)).encode()
    response = handle_message(server, raw)
    assert response == {"jsonrpc": "2.0", "id": 5, "result": {}}


def test_initialize_echoes_supported_version():
    server = MCPServer("test", "1.0.0")
    response = handle_message(
        server,
        _request(
            "initialize",
            {"protocolVersion": "2024-11-05", "clientInfo": {"name": "c", "version": "1"}},
        ),
    )
    result = response["result"]
    assert result["protocolVersion"] == "2024-11-05"
    assert result["serverInfo"] == {"name": "test", "version": "1.0.0"}


def test_initialize_marks_session():
    server = MCPServer("test", "1.0.0")
    session = ClientSession("s1")
    context = with_session(Context(), session)
    handle_message(server, _request("initialize", {"protocolVersion": "2024-11-05"}), context)
    assert session.initialized


def test_tools_without_capability_not_found():
    server = MCPServer("test", "1.0.0")
    response = handle_message(server, _request("tools/list"))
    assert response["error"]["code"] == METHOD_NOT_FOUND
    assert "tools" in response["error"]["message"]


def test_unparsable_params():
    server = MCPServer("test", "1.0.0")
    server.add_tool(Tool("echo"), lambda ctx, req: "x")
    response = handle_message(server, _request("tools/call", ["not", "an", "object"]))
    assert response["error"]["code"] == INVALID_REQUEST
    assert response["error"]["message"].startswith("unparsable tools/call request")


def test_call_unknown_tool():
    server = MCPServer("test", "1.0.0")
    server.add_tool(Tool("echo"), lambda ctx, req: "x")
    response = handle_message(server, _request("tools/call", {"name": "missing"}))
    assert response["error"]["code"] == INVALID_PARAMS
    assert "missing" in response["error"]["message"]


def test_call_tool_sees_server_in_context():
    server = MCPServer("test", "1.0.0")
    found = []

    def handler(ctx, req):
        found.append(server_from_context(ctx))
        return req["params"]["name"]

    server.add_tool(Tool("echo"), handler)
    response = handle_message(server, _request("tools/call", {"name": "echo"}))
    assert found == [server]
    assert response["result"]["content"][0]["text"] == "echo"


def test_read_resource_through_template():
    server = MCPServer("test", "1.0.0")
    server.add_resource_template(
        ResourceTemplate("file:///{name}", "files"),
        lambda ctx, req: [{"uri": req["params"]["uri"], "text": req["params"]["arguments"]["name"]}],
    )
    response = handle_message(server, _request("resources/read", {"uri": "file:///notes"}))
    assert response["result"]["contents"][0]["text"] == "notes"


def test_set_level_requires_logging_capability():
    server = MCPServer("test", "1.0.0")
    response = handle_message(server, _request("logging/setLevel", {"level": "debug"}))
    assert response["error"]["code"] == METHOD_NOT_FOUND


def test_set_level_without_session_is_internal_error():
    server = MCPServer("test", "1.0.0", logging=True)
    response = handle_message(server, _request("logging/setLevel", {"level": "debug"}))
    assert response["error"]["code"] == INTERNAL_ERROR


def test_set_level_updates_session():
    server = MCPServer("test", "1.0.0", logging=True)
    session = ClientSession("s1")
    session.initialize()
    context = with_session(Context(), session)
    response = handle_message(server, _request("logging/setLevel", {"level": "debug"}), context)
    assert response["result"] == {}
    assert session.log_level == LoggingLevel.DEBUG

    bad = handle_message(server, _request("logging/setLevel", {"level": "loud"}), context)
    assert bad["error"]["code"] == INVALID_PARAMS


def test_server_from_plain_context_is_none():
    assert server_from_context(Context()) is None