[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mcpkit"
version = "0.1.0"
description = "A Model Context Protocol server toolkit with JSON-RPC dispatch, stdio and Server-Sent Events transports"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "mcp",
    "model context protocol",
    "json-rpc",
    "server-sent events",
    "sse",
    "stdio",
    "tools",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries :: Application Frameworks",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["mcpkit"]

[tool.hatch.build.targets.sdist]
include = ["mcpkit", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
