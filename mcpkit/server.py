"""The MCP server: registries of tools, prompts and resources and the request handlers."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from .protocol import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    NOTIFICATION_PROMPTS_LIST_CHANGED,
    NOTIFICATION_RESOURCES_LIST_CHANGED,
    NOTIFICATION_TOOLS_LIST_CHANGED,
    RESOURCE_NOT_FOUND,
    Context,
    LoggingLevel,
    MCPError,
    Prompt,
    RequestError,
    Resource,
    ResourceTemplate,
    ServerTool,
    Tool,
    negotiate_protocol_version,
    paginate,
)
from .sessions import (
    ClientSession,
    NotificationChannelBlockedError,
    SessionNotInitializedError,
    SessionRegistry,
    current_session,
)

_log = logging.getLogger(__name__)

ToolHandler = Callable[[Context, dict], Any]
ToolMiddleware = Callable[[ToolHandler], ToolHandler]
ToolFilter = Callable[[Context, list], list]
NotificationHandler = Callable[[Context, dict], None]


class SessionDoesNotSupportToolsError(MCPError):
    """Raised when a session cannot hold session-specific tools."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__("session does not support per-session tools")


class SessionDoesNotSupportLoggingError(MCPError):
    """Raised when a session cannot take a log level."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__("session does not support setting logging level")


class ResourceNotFoundError(MCPError):
    """Raised when no handler serves a resource URI."""

    def __init__(self, uri: str) -> None:
        self.uri = uri
        super().__init__(f"handler not found for resource URI '{uri}': resource not found")


class PromptNotFoundError(MCPError):
    """Raised when a prompt name is unknown."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"prompt '{name}' not found: prompt not found")


class ToolNotFoundError(MCPError):
    """Raised when a tool name is unknown."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"tool '{name}' not found: tool not found")


@dataclass
class ResourceCapabilities:
    subscribe: bool = False
    list_changed: bool = False


@dataclass
class PromptCapabilities:
    list_changed: bool = False


@dataclass
class ToolCapabilities:
    list_changed: bool = False


@dataclass
class ServerPrompt:
    """A prompt together with the callable that renders it."""

    prompt: Prompt
    handler: Callable[[Context, dict], Any]


@dataclass
class ServerResource:
    """A resource together with the callable that reads it."""

    resource: Resource
    handler: Callable[[Context, dict], Any]


def _as_dict(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    return to_dict() if callable(to_dict) else value


def _tool_result(value: Any) -> Any:
    if isinstance(value, str):
        return {"content": [{"type": "text", "text": value}]}
    return _as_dict(value)


def _recovery(next_handler: ToolHandler) -> ToolHandler:
    def handler(context: Context, request: dict) -> Any:
        try:
            return next_handler(context, request)
        except Exception as exc:
            name = (request.get("params") or {}).get("name", "")
            raise MCPError(f"panic recovered in {name} tool handler: {exc}") from exc

    return handler


def _params(request: dict) -> dict:
    return request.get("params") or {}


class MCPServer:
    """A Model Context Protocol server holding tools, prompts and resources."""

    def __init__(
        self,
        name: str,
        version: str,
        *,
        instructions: str = "",
        pagination_limit: int | None = None,
        resource_capabilities: ResourceCapabilities | None = None,
        prompt_capabilities: PromptCapabilities | None = None,
        tool_capabilities: ToolCapabilities | None = None,
        logging: bool = False,
        recovery: bool = False,
        tool_middlewares: Iterable[ToolMiddleware] = (),
        tool_filters: Iterable[ToolFilter] = (),
    ) -> None:
        self.name = name
        self.version = version
        self.instructions = instructions
        self.pagination_limit = pagination_limit
        self.resource_capabilities = resource_capabilities
        self.prompt_capabilities = prompt_capabilities
        self.tool_capabilities = tool_capabilities
        self.logging = logging
        self._lock = threading.RLock()
        self._resources: dict[str, ServerResource] = {}
        self._templates: dict[str, tuple[ResourceTemplate, Callable[..., Any]]] = {}
        self._prompts: dict[str, ServerPrompt] = {}
        self._tools: dict[str, ServerTool] = {}
        self._middlewares: list[ToolMiddleware] = [_recovery] if recovery else []
        self._middlewares.extend(tool_middlewares)
        self._filters: list[ToolFilter] = list(tool_filters)
        self._notification_handlers: dict[str, NotificationHandler] = {}
        self.sessions = SessionRegistry(on_blocked=self._report_blocked)

    @staticmethod
    def _report_blocked(session_id: str, method: str, error: Exception) -> None:
        _log.warning("notification %s to session %s failed: %s", method, session_id, error)

    # ---- capabilities -------------------------------------------------

    def _ensure_tool_capabilities(self) -> None:
        with self._lock:
            if self.tool_capabilities is None:
                self.tool_capabilities = ToolCapabilities(list_changed=True)

    def _ensure_resource_capabilities(self) -> None:
        with self._lock:
            if self.resource_capabilities is None:
                self.resource_capabilities = ResourceCapabilities()

    def _ensure_prompt_capabilities(self) -> None:
        with self._lock:
            if self.prompt_capabilities is None:
                self.prompt_capabilities = PromptCapabilities()

    # ---- registration -------------------------------------------------

    def add_resource(self, resource: Resource, handler: Callable[..., Any]) -> None:
        self.add_resources(ServerResource(resource, handler))

    def add_resources(self, *args: ServerResource) -> None:
        self._ensure_resource_capabilities()
        with self._lock:
            for entry in args:
                self._resources[entry.resource.uri] = entry
        if self.resource_capabilities.list_changed:
            self.send_notification_to_all_clients(NOTIFICATION_RESOURCES_LIST_CHANGED)

    def remove_resource(self, uri: str) -> None:
        with self._lock:
            existed = self._resources.pop(uri, None) is not None
        caps = self.resource_capabilities
        if existed and caps is not None and caps.list_changed:
            self.send_notification_to_all_clients(NOTIFICATION_RESOURCES_LIST_CHANGED)

    def add_resource_template(
        self, template: ResourceTemplate, handler: Callable[..., Any]
    ) -> None:
        self._ensure_resource_capabilities()
        with self._lock:
            self._templates[str(template.uri_template)] = (template, handler)
        if self.resource_capabilities.list_changed:
            self.send_notification_to_all_clients(NOTIFICATION_RESOURCES_LIST_CHANGED)

    def add_prompt(self, prompt: Prompt, handler: Callable[..., Any]) -> None:
        self.add_prompts(ServerPrompt(prompt, handler))

    def add_prompts(self, *args: ServerPrompt) -> None:
        self._ensure_prompt_capabilities()
        with self._lock:
            for entry in args:
                self._prompts[entry.prompt.name] = entry
        if self.prompt_capabilities.list_changed:
            self.send_notification_to_all_clients(NOTIFICATION_PROMPTS_LIST_CHANGED)

    def delete_prompts(self, *args: str) -> None:
        with self._lock:
            removed = [self._prompts.pop(name, None) for name in args]
        caps = self.prompt_capabilities
        if any(removed) and caps is not None and caps.list_changed:
            self.send_notification_to_all_clients(NOTIFICATION_PROMPTS_LIST_CHANGED)

    def add_tool(self, tool: Tool, handler: ToolHandler) -> None:
        self.add_tools(ServerTool(tool, handler))

    def add_tools(self, *args: ServerTool) -> None:
        self._ensure_tool_capabilities()
        with self._lock:
            for entry in args:
                self._tools[entry.tool.name] = entry
        if self.tool_capabilities.list_changed:
            self.send_notification_to_all_clients(NOTIFICATION_TOOLS_LIST_CHANGED)

    def set_tools(self, *args: ServerTool) -> None:
        """Replace every registered tool with ``args``."""
        with self._lock:
            self._tools = {}
        self.add_tools(*args)

    def delete_tools(self, *args: str) -> None:
        with self._lock:
            removed = [self._tools.pop(name, None) for name in args]
        caps = self.tool_capabilities
        if any(removed) and caps is not None and caps.list_changed:
            self.send_notification_to_all_clients(NOTIFICATION_TOOLS_LIST_CHANGED)

    def add_notification_handler(self, method: str, handler: NotificationHandler) -> None:
        with self._lock:
            self._notification_handlers[method] = handler

    def add_tool_middleware(self, middleware: ToolMiddleware) -> None:
        with self._lock:
            self._middlewares.append(middleware)

    def add_tool_filter(self, tool_filter: ToolFilter) -> None:
        with self._lock:
            self._filters.append(tool_filter)

    # ---- sessions -----------------------------------------------------

    def register_session(self, session: ClientSession) -> None:
        self.sessions.register(session)

    def unregister_session(self, session_id: str) -> ClientSession | None:
        return self.sessions.unregister(session_id)

    def send_notification_to_all_clients(
        self, method: str, params: dict[str, Any] | None = None
    ) -> list[str]:
        return self.sessions.broadcast(method, params)

    @staticmethod
    def _upgrade(session: ClientSession) -> None:
        upgrade = getattr(session, "upgrade_to_sse_when_receive_notification", None)
        if callable(upgrade):
            upgrade()

    def send_notification_to_client(
        self, context: Context, method: str, params: dict[str, Any] | None = None
    ) -> None:
        """Notify the session carried by ``context``."""
        session = current_session(context)
        if session is None or not session.initialized:
            raise SessionNotInitializedError(session.session_id if session else None)
        self._upgrade(session)
        from .protocol import make_notification

        try:
            session.push_notification(make_notification(method, params))
        except NotificationChannelBlockedError as exc:
            self._report_blocked(session.session_id, method, exc)
            raise

    def send_notification_to_specific_client(
        self, session_id: str, method: str, params: dict[str, Any] | None = None
    ) -> None:
        session = self.sessions.get(session_id)
        if not session.initialized:
            raise SessionNotInitializedError(session_id)
        self._upgrade(session)
        self.sessions.send_to(session_id, method, params)

    def _tool_session(self, session_id: str) -> ClientSession:
        session = self.sessions.get(session_id)
        if not session.supports_tools:
            raise SessionDoesNotSupportToolsError(session_id)
        return session

    def _notify_session_tools_changed(self, session: ClientSession) -> None:
        caps = self.tool_capabilities
        if session.initialized and caps is not None and caps.list_changed:
            try:
                self.send_notification_to_specific_client(
                    session.session_id, NOTIFICATION_TOOLS_LIST_CHANGED
                )
            except MCPError as exc:
                self._report_blocked(session.session_id, NOTIFICATION_TOOLS_LIST_CHANGED, exc)

    def add_session_tool(self, session_id: str, tool: Tool, handler: ToolHandler) -> None:
        self.add_session_tools(session_id, ServerTool(tool, handler))

    def add_session_tools(self, session_id: str, *args: ServerTool) -> None:
        session = self._tool_session(session_id)
        self._ensure_tool_capabilities()
        tools = session.tools
        tools.update({entry.tool.name: entry for entry in args})
        session.tools = tools
        self._notify_session_tools_changed(session)

    def delete_session_tools(self, session_id: str, *args: str) -> None:
        session = self._tool_session(session_id)
        tools = session.tools
        for name in args:
            tools.pop(name, None)
        session.tools = tools
        self._notify_session_tools_changed(session)

    # ---- request handlers ---------------------------------------------

    def handle_initialize(self, context: Context, request: dict) -> dict[str, Any]:
        params = _params(request)
        capabilities: dict[str, Any] = {}
        if self.resource_capabilities is not None:
            caps = self.resource_capabilities
            entry = {}
            if caps.subscribe:
                entry["subscribe"] = True
            if caps.list_changed:
                entry["listChanged"] = True
            capabilities["resources"] = entry
        if self.prompt_capabilities is not None:
            capabilities["prompts"] = (
                {"listChanged": True} if self.prompt_capabilities.list_changed else {}
            )
        if self.tool_capabilities is not None:
            capabilities["tools"] = (
                {"listChanged": True} if self.tool_capabilities.list_changed else {}
            )
        if self.logging:
            capabilities["logging"] = {}
        result: dict[str, Any] = {
            "protocolVersion": negotiate_protocol_version(params.get("protocolVersion", "")),
            "capabilities": capabilities,
            "serverInfo": {"name": self.name, "version": self.version},
        }
        if self.instructions:
            result["instructions"] = self.instructions
        session = current_session(context)
        if session is not None:
            session.initialize()
            session.client_info = params.get("clientInfo")
        return result

    def handle_ping(self, context: Context, request: dict) -> dict[str, Any]:
        """Answer a ping with an empty result; params, if sent, must be an object."""
        params = request.get("params")
        if params is not None and not isinstance(params, dict):
            raise RequestError(
                request.get("id"), INVALID_PARAMS, "ping params must be an object"
            )
        return {}

    def handle_set_level(self, context: Context, request: dict) -> dict[str, Any]:
        request_id = request.get("id")
        session = current_session(context)
        if session is None or not session.initialized:
            raise RequestError(request_id, INTERNAL_ERROR, SessionNotInitializedError())
        if not session.supports_logging:
            raise RequestError(
                request_id, INTERNAL_ERROR, SessionDoesNotSupportLoggingError(session.session_id)
            )
        level = _params(request).get("level")
        try:
            session.log_level = LoggingLevel(level)
        except ValueError:
            raise RequestError(
                request_id, INVALID_PARAMS, f"invalid logging level '{level}'"
            ) from None
        return {}

    def _page(self, request: dict, items: list, key: str) -> dict[str, Any]:
        try:
            page, next_cursor = paginate(
                items, _params(request).get("cursor"), self.pagination_limit
            )
        except ValueError as exc:
            raise RequestError(request.get("id"), INVALID_PARAMS, exc) from exc
        result: dict[str, Any] = {key: [item.to_dict() for item in page]}
        if next_cursor:
            result["nextCursor"] = next_cursor
        return result

    def handle_list_resources(self, context: Context, request: dict) -> dict[str, Any]:
        with self._lock:
            resources = [entry.resource for entry in self._resources.values()]
        resources.sort(key=lambda item: item.name)
        return self._page(request, resources, "resources")

    def handle_list_resource_templates(self, context: Context, request: dict) -> dict[str, Any]:
        with self._lock:
            templates = [template for template, _ in self._templates.values()]
        templates.sort(key=lambda item: item.name)
        return self._page(request, templates, "resourceTemplates")

    def handle_read_resource(self, context: Context, request: dict) -> dict[str, Any]:
        request_id = request.get("id")
        uri = _params(request).get("uri", "")
        with self._lock:
            direct = self._resources.get(uri)
            templates = list(self._templates.values())
        handler = None
        if direct is not None:
            handler = direct.handler
        else:
            for template, template_handler in templates:
                arguments = template.uri_template.match(uri)
                if arguments is not None:
                    handler = template_handler
                    request = {**request, "params": {**_params(request), "arguments": arguments}}
                    break
        if handler is None:
            raise RequestError(request_id, RESOURCE_NOT_FOUND, ResourceNotFoundError(uri))
        try:
            contents = handler(context, request)
        except Exception as exc:
            raise RequestError(request_id, INTERNAL_ERROR, exc) from exc
        return {"contents": [_as_dict(item) for item in contents or []]}

    def handle_list_prompts(self, context: Context, request: dict) -> dict[str, Any]:
        with self._lock:
            prompts = [entry.prompt for entry in self._prompts.values()]
        prompts.sort(key=lambda item: item.name)
        return self._page(request, prompts, "prompts")

    def handle_get_prompt(self, context: Context, request: dict) -> Any:
        request_id = request.get("id")
        name = _params(request).get("name", "")
        with self._lock:
            entry = self._prompts.get(name)
        if entry is None:
            raise RequestError(request_id, INVALID_PARAMS, PromptNotFoundError(name))
        try:
            return _as_dict(entry.handler(context, request))
        except Exception as exc:
            raise RequestError(request_id, INTERNAL_ERROR, exc) from exc

    def handle_list_tools(self, context: Context, request: dict) -> dict[str, Any]:
        with self._lock:
            tools = {name: entry.tool for name, entry in self._tools.items()}
            filters = list(self._filters)
        session = current_session(context)
        if session is not None and session.supports_tools:
            tools.update({name: entry.tool for name, entry in session.tools.items()})
        listed = [tools[name] for name in sorted(tools)]
        for tool_filter in filters:
            listed = list(tool_filter(context, listed))
        return self._page(request, listed, "tools")

    def handle_call_tool(self, context: Context, request: dict) -> Any:
        request_id = request.get("id")
        name = _params(request).get("name", "")
        entry = None
        session = current_session(context)
        if session is not None and session.supports_tools:
            entry = session.tools.get(name)
        if entry is None:
            with self._lock:
                entry = self._tools.get(name)
        if entry is None:
            raise RequestError(request_id, INVALID_PARAMS, ToolNotFoundError(name))
        with self._lock:
            middlewares = list(self._middlewares)
        handler = entry.handler
        for middleware in reversed(middlewares):
            handler = middleware(handler)
        try:
            return _tool_result(handler(context, request))
        except Exception as exc:
            raise RequestError(request_id, INTERNAL_ERROR, exc) from exc

    def handle_notification(self, context: Context, notification: dict) -> None:
        with self._lock:
            handler = self._notification_handlers.get(notification.get("method", ""))
        if handler is not None:
            handler(context, notification)