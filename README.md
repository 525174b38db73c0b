# mcpkit

`mcpkit` is a toolkit for building Model Context Protocol (MCP) servers in pure
Python. It uses only the standard library.

A server offers three kinds of things to a client:

- **tools**: named operations that the client calls with arguments,
- **prompts**: named prompt templates that the client fetches,
- **resources**: content addressed by URI. A resource is either registered
  directly or matched through a `URITemplate`.

Messages are JSON-RPC 2.0. The package has two transports:

- **stdio** (`mcpkit.stdio`): serves one client, with one JSON message per line
  on the input and output streams.
- **Server-Sent Events** (`mcpkit.sse`): serves many clients over HTTP. Each
  client opens an SSE stream and posts its requests to a message endpoint for
  its own session.

## Modules

- `mcpkit.protocol`: the data types (`Tool`, `Prompt`, `Resource`,
  `ResourceTemplate`, `URITemplate`, `ServerTool`, `LoggingLevel`), the
  immutable request `Context`, the helpers that build messages
  (`make_response`, `make_error_response`, `make_notification`), the
  `paginate` helper, and the errors (`MCPError`, `RequestError`,
  `UnparsableMessageError`, `DynamicPathConfigError`).
- `mcpkit.sessions`: `ClientSession`, `SessionRegistry`, `current_session`,
  `with_session`, and the session errors.
- `mcpkit.server`: `MCPServer`, plus the capability dataclasses and the
  `ServerPrompt` and `ServerResource` pairs.
- `mcpkit.dispatch`: `handle_message` and `server_from_context`.
- `mcpkit.stdio`: `StdioServer`, `StdioSession` and `serve_stdio`.
- `mcpkit.sse`: `SSEServer`, `SSESession`, `start_test_server` and
  `normalize_url_path`.

## Building a server

```python
from mcpkit.server import MCPServer
from mcpkit.protocol import Tool

server = MCPServer("demo", "1.0.0", instructions="A small demonstration server")


def echo(context, request):
    arguments = request.get("params", {}).get("arguments") or {}
    return str(arguments.get("text", ""))


server.add_tool(Tool(name="echo", description="Echo the input back"), echo)
```

Handlers take the request `Context` and the request as a dict. A tool handler
can return a string, which is wrapped as a single text content item. It can
also return a dict, or an object that has a `to_dict()` method.

When you add a tool, prompt or resource and the matching capability is not yet
declared, the server declares it for you. Tools declared this way get
`list_changed=True`. Prompts and resources declared this way get
`list_changed=False`. You can also pass capabilities explicitly when you create
the server (`resource_capabilities`, `prompt_capabilities`,
`tool_capabilities`), together with these options:

- `pagination_limit`: the page size for list results. Pages are chained with
  opaque base64 cursors.
- `logging`: accept `logging/setLevel` requests.
- `recovery`: wrap every tool handler so that an exception it raises is
  reported as `panic recovered in <tool> tool handler: ...`.
- `tool_middlewares`: functions that wrap every tool handler. The first one in
  the list is the outermost. `add_tool_middleware` adds more.
- `tool_filters`: functions `(context, tools) -> tools` that narrow the tool
  list for each request. `add_tool_filter` adds more.

You can change the registries while the server runs, with `add_tools`,
`set_tools`, `delete_tools`, `add_prompts`, `delete_prompts`, `add_resources`,
`remove_resource` and `add_resource_template`. If the capability is declared
with `list_changed`, each change sends a `list_changed` notification to every
initialized session.

A single session can have tools of its own. `add_session_tools` adds them and
`delete_session_tools` removes them. For that session only, these tools
override global tools that have the same name.

Use `add_notification_handler` to handle notifications that the client sends.
To send notifications to clients, use `send_notification_to_all_clients`,
`send_notification_to_client` (the session carried by a context) or
`send_notification_to_specific_client` (by session id).

## Dispatching messages

`mcpkit.dispatch.handle_message` takes one JSON-RPC message and returns the
response as a dict. The message can be a `str`, `bytes` or an already decoded
dict. It returns `None` for a notification, and for a client's reply to a
request the server sent.

```python
from mcpkit.dispatch import handle_message

response = handle_message(server, b'{"jsonrpc": "2.0", "id": 1, "method": "ping"}')
```

These methods are routed:

- `initialize`
- `ping`
- `logging/setLevel`
- `resources/list`
- `resources/templates/list`
- `resources/read`
- `prompts/list`
- `prompts/get`
- `tools/list`
- `tools/call`

A method whose capability the server has not declared gets a "method not found"
error.

## Serving over stdio

```python
from mcpkit.stdio import serve_stdio

serve_stdio(server)
```

`serve_stdio` reads requests from `sys.stdin` and writes responses and
notifications to `sys.stdout`. It stops at the end of input. When it runs in
the main thread, it also stops on SIGINT or SIGTERM. To use other streams,
create a `StdioServer` and call `listen(stdin, stdout, stop_event)`.

## Serving over Server-Sent Events

```python
from mcpkit.sse import SSEServer

sse = SSEServer(server, base_url="http://localhost:8080", base_path="/mcp")
sse.start("localhost:8080")  # blocks until shutdown() is called
```

A client connects with `GET /mcp/sse`. The first event it receives is
`endpoint`. This event carries the URL to post messages to, including the
session id. The server answers each posted message with `202 Accepted`, and the
JSON-RPC response arrives on the SSE stream.

These options change the endpoint and the stream:

- `use_full_url_for_message_endpoint=False`: send only the path, without
  `base_url`.
- `append_query_to_message_endpoint=True`: carry over the query string of the
  SSE request.
- `keep_alive` and `keep_alive_interval` (in seconds): send periodic `ping`
  requests.
- `context_func`: derive the request `Context` from the incoming HTTP request.

If the mount path differs per request, for example one per tenant, pass
`dynamic_base_path` instead of `base_path`. This is a function of the request
and the session id. In that mode the built-in routing (`serve`) and
`complete_sse_endpoint` / `complete_message_endpoint` raise or report a
`DynamicPathConfigError`, so you route requests to `handle_sse` and
`handle_message` yourself.

`normalize_url_path` joins and cleans path segments. `start_test_server`
starts a server on a free local port in a background thread and sets its
`base_url`. Call `shutdown()` to close all sessions and stop the HTTP server.

## What it does not do

- It has no command-line program. You write the script that builds and serves
  your server.
- It has no MCP client.
- It has no streamable HTTP transport. Its only transports are stdio and SSE.
- Resource subscriptions are not implemented. The `subscribe` flag is only
  reported in the server's capabilities.