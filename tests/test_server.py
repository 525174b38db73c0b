import pytest

from mcpkit.protocol import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    LATEST_PROTOCOL_VERSION,
    NOTIFICATION_RESOURCES_LIST_CHANGED,
    NOTIFICATION_TOOLS_LIST_CHANGED,
    RESOURCE_NOT_FOUND,
    Context,
    LoggingLevel,
    Prompt,
    RequestError,
    Resource,
    ResourceTemplate,
    ServerTool,
    Tool,
)
from mcpkit.server import (
    MCPServer,
    PromptCapabilities,
    ResourceCapabilities,
    ServerPrompt,
    SessionDoesNotSupportToolsError,
    ToolCapabilities,
)
from mcpkit.sessions import (
    ClientSession,
    NotificationChannelBlockedError,
    SessionExistsError,
    SessionNotFoundError,
    SessionNotInitializedError,
    with_session,
)


def text_tool(text):
    return lambda ctx, req: {"content": [{"type": "text", "text": text}]}


def call(name, request_id=1):
    return {"id": request_id, "params": {"name": name}}


def live_session(server, session_id="s1"):
    session = ClientSession(session_id)
    server.register_session(session)
    session.initialize()
    return session


def test_initialize_reports_configured_capabilities():
    server = MCPServer(
        "test",
        "1.0.0",
        resource_capabilities=ResourceCapabilities(True, True),
        logging=True,
        instructions="be nice",
    )
    result = server.handle_initialize(Context(), {"id": 1, "params": {"protocolVersion": "2024-11-05"}})
    assert result["protocolVersion"] == "2024-11-05"
    assert result["serverInfo"] == {"name": "test", "version": "1.0.0"}
    assert result["capabilities"] == {
        "resources": {"subscribe": True, "listChanged": True},
        "logging": {},
    }
    assert result["instructions"] == "be nice"


def test_initialize_unknown_version_falls_back_and_marks_session():
    server = MCPServer("test", "1.0.0")
    session = ClientSession("abc")
    ctx = with_session(Context(), session)
    info = {"name": "test-client", "version": "1.0.0"}
    result = server.handle_initialize(ctx, {"id": 1, "params": {"protocolVersion": "1999", "clientInfo": info}})
    assert result["protocolVersion"] == LATEST_PROTOCOL_VERSION
    assert result["capabilities"] == {}
    assert session.initialized
    assert session.client_info == info


def test_ping_returns_empty_result():
    assert MCPServer("t", "1").handle_ping(Context(), {"id": 1}) == {}


def test_set_level_requires_initialized_session():
    server = MCPServer("t", "1", logging=True)
    with pytest.raises(RequestError) as info:
        server.handle_set_level(Context(), {"id": 3, "params": {"level": "debug"}})
    assert info.value.code == INTERNAL_ERROR
    assert info.value.to_response()["id"] == 3


def test_set_level_validates_and_sets():
    server = MCPServer("t", "1", logging=True)
    session = ClientSession()
    session.initialize()
    ctx = with_session(Context(), session)
    with pytest.raises(RequestError) as info:
        server.handle_set_level(ctx, {"id": 1, "params": {"level": "loud"}})
    assert info.value.code == INVALID_PARAMS
    assert "invalid logging level 'loud'" in str(info.value)
    assert server.handle_set_level(ctx, {"id": 2, "params": {"level": "debug"}}) == {}
    assert session.log_level is LoggingLevel.DEBUG


def test_adding_tool_registers_capabilities_implicitly():
    server = MCPServer("t", "1")
    server.add_tool(Tool("a"), text_tool("a"))
    assert server.tool_capabilities.list_changed is True
    explicit = MCPServer("t", "1", tool_capabilities=ToolCapabilities(False))
    explicit.add_tool(Tool("a"), text_tool("a"))
    assert explicit.tool_capabilities.list_changed is False


def test_list_tools_sorted_and_paginated():
    server = MCPServer("t", "1", pagination_limit=2)
    for name in ("c", "a", "b"):
        server.add_tool(Tool(name), text_tool(name))
    first = server.handle_list_tools(Context(), {"id": 1, "params": {}})
    assert [t["name"] for t in first["tools"]] == ["a", "b"]
    second = server.handle_list_tools(Context(), {"id": 2, "params": {"cursor": first["nextCursor"]}})
    assert [t["name"] for t in second["tools"]] == ["c"]
    assert "nextCursor" not in second


def test_list_with_bad_cursor_is_invalid_params():
    server = MCPServer("t", "1")
    server.add_tool(Tool("a"), text_tool("a"))
    with pytest.raises(RequestError) as info:
        server.handle_list_tools(Context(), {"id": 1, "params": {"cursor": "!!not base64"}})
    assert info.value.code == INVALID_PARAMS


def test_call_tool_success_and_errors():
    server = MCPServer("t", "1")
    server.add_tool(Tool("echo"), lambda ctx, req: "hello")

    def broken(ctx, req):
        raise RuntimeError("kaput")

    server.add_tool(Tool("broken"), broken)
    assert server.handle_call_tool(Context(), call("echo")) == {
        "content": [{"type": "text", "text": "hello"}]
    }
    with pytest.raises(RequestError) as missing:
        server.handle_call_tool(Context(), call("nope"))
    assert missing.value.code == INVALID_PARAMS
    assert "tool 'nope' not found" in str(missing.value)
    with pytest.raises(RequestError) as failed:
        server.handle_call_tool(Context(), call("broken"))
    assert failed.value.code == INTERNAL_ERROR
    assert failed.value.to_response()["error"]["message"] == "kaput"


def test_middlewares_wrap_in_registration_order():
    order = []

    def tagged(tag):
        def middleware(next_handler):
            def handler(ctx, req):
                order.append(tag)
                return next_handler(ctx, req)
            return handler
        return middleware

    server = MCPServer("t", "1", tool_middlewares=[tagged("first")])
    server.add_tool_middleware(tagged("second"))
    server.add_tool(Tool("x"), text_tool("x"))
    result = server.handle_call_tool(Context(), call("x"))
    assert result == {"content": [{"type": "text", "text": "x"}]}
    assert order == ["first", "second"]


def test_recovery_reports_tool_name():
    server = MCPServer("t", "1", recovery=True)

    def boom(ctx, req):
        raise ValueError("bad")

    server.add_tool(Tool("boom"), boom)
    with pytest.raises(RequestError) as info:
        server.handle_call_tool(Context(), call("boom"))
    assert info.value.to_response()["error"]["message"] == "panic recovered in boom tool handler: bad"


def test_tool_filter_applies_to_listing():
    server = MCPServer("t", "1", tool_filters=[lambda ctx, tools: [t for t in tools if t.name != "hidden"]])
    server.add_tool(Tool("hidden"), text_tool("h"))
    server.add_tool(Tool("shown"), text_tool("s"))
    result = server.handle_list_tools(Context(), {"id": 1})
    assert [t["name"] for t in result["tools"]] == ["shown"]


def test_session_tools_override_global_ones():
    server = MCPServer("t", "1")
    server.add_tool(Tool("shared", description="global"), text_tool("global"))
    session = live_session(server)
    server.add_session_tool("s1", Tool("shared", description="mine"), text_tool("mine"))
    ctx = with_session(Context(), session)
    listed = server.handle_list_tools(ctx, {"id": 1})["tools"]
    assert [t["description"] for t in listed] == ["mine"]
    assert server.handle_call_tool(ctx, call("shared"))["content"][0]["text"] == "mine"
    assert session.next_notification(timeout=0.1)["method"] == NOTIFICATION_TOOLS_LIST_CHANGED
    server.delete_session_tools("s1", "shared")
    assert server.handle_call_tool(ctx, call("shared"))["content"][0]["text"] == "global"


def test_session_tool_errors():
    server = MCPServer("t", "1")
    with pytest.raises(SessionNotFoundError):
        server.add_session_tool("ghost", Tool("x"), text_tool("x"))

    class NoTools(ClientSession):
        supports_tools = False

    server.register_session(NoTools("plain"))
    with pytest.raises(SessionDoesNotSupportToolsError):
        server.delete_session_tools("plain", "x")


def test_set_and_delete_tools():
    server = MCPServer("t", "1")
    server.add_tool(Tool("old"), text_tool("o"))
    server.set_tools(ServerTool(Tool("new"), text_tool("n")))
    assert [t["name"] for t in server.handle_list_tools(Context(), {"id": 1})["tools"]] == ["new"]
    server.delete_tools("new")
    assert server.handle_list_tools(Context(), {"id": 1})["tools"] == []


def test_resources_list_and_read():
    server = MCPServer("t", "1")
    server.add_resource(Resource("file:///b", "b"), lambda ctx, req: [{"uri": "file:///b", "text": "B"}])
    server.add_resource(Resource("file:///a", "a"), lambda ctx, req: [{"uri": "file:///a", "text": "A"}])
    listed = server.handle_list_resources(Context(), {"id": 1})
    assert [r["uri"] for r in listed["resources"]] == ["file:///a", "file:///b"]
    read = server.handle_read_resource(Context(), {"id": 2, "params": {"uri": "file:///b"}})
    assert read == {"contents": [{"uri": "file:///b", "text": "B"}]}


def test_read_resource_through_template_passes_arguments():
    server = MCPServer("t", "1")
    seen = {}

    def handler(ctx, req):
        seen.update(req["params"]["arguments"])
        return [{"uri": req["params"]["uri"], "text": "ok"}]

    server.add_resource_template(ResourceTemplate("users://{id}/profile", "user"), handler)
    server.handle_read_resource(Context(), {"id": 1, "params": {"uri": "users://42/profile"}})
    assert seen == {"id": "42"}
    templates = server.handle_list_resource_templates(Context(), {"id": 2})
    assert templates["resourceTemplates"][0]["uriTemplate"] == "users://{id}/profile"


def test_read_unknown_resource():
    server = MCPServer("t", "1")
    with pytest.raises(RequestError) as info:
        server.handle_read_resource(Context(), {"id": 1, "params": {"uri": "nothing://here"}})
    assert info.value.code == RESOURCE_NOT_FOUND
    assert "nothing://here" in str(info.value)


def test_resource_changes_notify_initialized_sessions_only():
    server = MCPServer("t", "1", resource_capabilities=ResourceCapabilities(False, True))
    ready = live_session(server, "ready")
    waiting = ClientSession("waiting")
    server.register_session(waiting)
    server.add_resource(Resource("x://1", "one"), lambda ctx, req: [])
    assert ready.next_notification(timeout=0.1)["method"] == NOTIFICATION_RESOURCES_LIST_CHANGED
    assert waiting.next_notification(timeout=0.01) is None
    server.remove_resource("x://1")
    assert ready.next_notification(timeout=0.1)["method"] == NOTIFICATION_RESOURCES_LIST_CHANGED
    server.remove_resource("x://1")
    assert ready.next_notification(timeout=0.01) is None


def test_prompts_get_list_delete():
    server = MCPServer("t", "1", prompt_capabilities=PromptCapabilities())
    server.add_prompts(ServerPrompt(Prompt("greet"), lambda ctx, req: {"messages": [req["params"]["name"]]}))
    assert server.handle_get_prompt(Context(), {"id": 1, "params": {"name": "greet"}}) == {"messages": ["greet"]}
    assert [p["name"] for p in server.handle_list_prompts(Context(), {"id": 2})["prompts"]] == ["greet"]
    server.delete_prompts("greet")
    with pytest.raises(RequestError) as info:
        server.handle_get_prompt(Context(), {"id": 3, "params": {"name": "greet"}})
    assert info.value.code == INVALID_PARAMS


def test_notification_handler_is_called():
    server = MCPServer("t", "1")
    received = []
    server.add_notification_handler("notifications/initialized", lambda ctx, n: received.append(n))
    note = {"jsonrpc": "2.0", "method": "notifications/initialized"}
    assert server.handle_notification(Context(), note) is None
    server.handle_notification(Context(), {"method": "other"})
    assert received == [note]


def test_session_registration_and_direct_notifications():
    server = MCPServer("t", "1")
    session = ClientSession("one", queue_size=1)
    server.register_session(session)
    with pytest.raises(SessionExistsError):
        server.register_session(ClientSession("one"))
    with pytest.raises(SessionNotInitializedError):
        server.send_notification_to_specific_client("one", "m", None)
    with pytest.raises(SessionNotFoundError):
        server.send_notification_to_specific_client("two", "m", None)
    session.initialize()
    server.send_notification_to_specific_client("one", "m", {"k": 1})
    with pytest.raises(NotificationChannelBlockedError):
        server.send_notification_to_specific_client("one", "m", None)
    assert session.next_notification(timeout=0.1)["params"] == {"k": 1}
    assert server.unregister_session("one") is session
    assert "one" not in server.sessions


def test_send_notification_to_client_from_context():
    server = MCPServer("t", "1")
    with pytest.raises(SessionNotInitializedError):
        server.send_notification_to_client(Context(), "m", None)
    session = ClientSession()
    session.initialize()
    server.send_notification_to_client(with_session(Context(), session), "note", {"a": "b"})
    assert session.next_notification(timeout=0.1) == {"jsonrpc": "2.0", "method": "note", "params": {"a": "b"}}