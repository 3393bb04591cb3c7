"""Bridge from remote MCP tool servers to chat-completion tool declarations.

Each configured server is reached over streamable HTTP. Its tools are
exposed to the model as ``mcp_{server}__{tool}`` so a call can be routed
back to the server that owns it. Sessions stay open for the life of the
process and are shared by all requests.
"""

import json
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from langchain_mcp_adapters.sessions import StreamableHttpConnection, create_session
from mcp import ClientSession

from gateway.api.exceptions import ToolExecutionError
from gateway.llm.models import FunctionDefinition, Tool

logger = logging.getLogger(__name__)

TOOL_PREFIX = "mcp_"
SERVER_SEPARATOR = "__"
EMPTY_SCHEMA = {"type": "object", "properties": {}}

WALLET_PLACEHOLDER = "{{WALLET_ADDRESS}}"
RPC_URL_PLACEHOLDER = "{{RPC_URL}}"


@dataclass
class McpServerConfig:
    """One remote tool server.

    ``allowed_tools`` uses the server's own tool names; None exposes all.
    """

    name: str
    url: str
    headers: dict[str, str] | None = None
    allowed_tools: list[str] | None = None
    system_message: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "McpServerConfig":
        return cls(
            name=data["name"],
            url=data["url"],
            headers=data.get("headers"),
            allowed_tools=data.get("allowed_tools", data.get("allowedTools")),
            system_message=data.get("system_message", data.get("systemMessage")),
        )


@dataclass
class _ConnectedServer:
    config: McpServerConfig
    session: ClientSession
    tools: list[Tool] = field(default_factory=list)


def load_server_configs(path: str | Path | None) -> list[McpServerConfig]:
    """Read server configs from a JSON list; no path means no servers.

    Raises:
        ValueError: File is not a JSON list of server objects.
    """
    if not path:
        return []

    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"MCP server config {path} must be a JSON list")
    try:
        return [McpServerConfig.from_dict(item) for item in data]
    except (KeyError, TypeError) as e:
        raise ValueError(f"Invalid MCP server entry in {path}: {e}") from e


def tool_name(server: str, tool: str) -> str:
    return f"{TOOL_PREFIX}{server}{SERVER_SEPARATOR}{tool}"


class ToolCatalogBridge:
    """Connected MCP servers and the tools they contribute."""

    def __init__(self):
        self._servers: dict[str, _ConnectedServer] = {}
        self._stack = AsyncExitStack()

    async def connect(self, config: McpServerConfig) -> None:
        """Open a session to ``config`` and discover its tools.

        Raises:
            Exception: Whatever the transport or handshake raised; nothing
                is registered in that case.
        """
        connection = StreamableHttpConnection(transport="streamable_http", url=config.url)
        if config.headers:
            connection["headers"] = config.headers

        server_stack = AsyncExitStack()
        try:
            session = await server_stack.enter_async_context(create_session(connection))
            await session.initialize()
            listed = await session.list_tools()
        except BaseException:
            await server_stack.aclose()
            raise

        discovered = listed.tools
        if config.allowed_tools is not None:
            discovered = [t for t in discovered if t.name in config.allowed_tools]

        tools = [
            Tool(function=FunctionDefinition(
                name=tool_name(config.name, t.name),
                description=t.description or f"MCP tool: {t.name}",
                parameters=t.inputSchema or EMPTY_SCHEMA,
            ))
            for t in discovered
        ]

        self._stack.push_async_callback(server_stack.aclose)
        self._servers[config.name] = _ConnectedServer(config=config, session=session, tools=tools)
        logger.info(
            f"Connected to MCP server '{config.name}'",
            extra={"url": config.url, "tool_count": len(tools)},
        )

    async def connect_all(self, configs: list[McpServerConfig]) -> None:
        """Connect every server; a failing server is skipped.

        Servers are connected one after another so every session is opened
        and later closed from the same task.
        """
        for config in configs:
            try:
                await self.connect(config)
            except Exception as e:
                logger.warning(f"MCP server '{config.name}' failed to connect, skipping: {e}")

    @property
    def has_servers(self) -> bool:
        return bool(self._servers)

    def tools(self) -> list[Tool]:
        return [tool for server in self._servers.values() for tool in server.tools]

    @staticmethod
    def is_internal(name: str) -> bool:
        return name.startswith(TOOL_PREFIX)

    def system_messages(self, wallet_address: str, rpc_url: str = "") -> list[str]:
        """Configured server prompts with caller placeholders filled in."""
        messages = []
        for server in self._servers.values():
            template = server.config.system_message
            if template:
                messages.append(
                    template.replace(WALLET_PLACEHOLDER, wallet_address).replace(RPC_URL_PLACEHOLDER, rpc_url)
                )
        return messages

    def _route(self, name: str) -> tuple[_ConnectedServer, str]:
        if not self.is_internal(name):
            raise ToolExecutionError(name, "Not an MCP tool")

        rest = name[len(TOOL_PREFIX):]
        # Longest registered server name wins, so names containing the
        # separator still resolve.
        for server_name in sorted(self._servers, key=len, reverse=True):
            prefix = server_name + SERVER_SEPARATOR
            if rest.startswith(prefix) and len(rest) > len(prefix):
                return self._servers[server_name], rest[len(prefix):]

        raise ToolExecutionError(name, "No connected MCP server owns this tool")

    def owns(self, name: str) -> bool:
        """True when a connected server advertises ``name``."""
        try:
            server, _ = self._route(name)
        except ToolExecutionError:
            return False
        return any(t.function.name == name for t in server.tools)

    async def execute(self, name: str, arguments: dict[str, Any]) -> str:
        """Run a prefixed tool and return its text result.

        Text segments are joined with newlines; a result without any text
        segments is returned as JSON.

        Raises:
            ToolExecutionError: Unknown tool, transport failure or a result
                the server flagged as an error.
        """
        server, remote_name = self._route(name)
        logger.debug(f"Executing MCP tool {remote_name} on '{server.config.name}'")

        try:
            result = await server.session.call_tool(remote_name, arguments)
        except Exception as e:
            raise ToolExecutionError(name, str(e)) from e

        texts = [block.text for block in result.content if getattr(block, "type", None) == "text"]
        if result.isError:
            raise ToolExecutionError(name, "\n".join(texts) or "Tool reported an error")
        if texts:
            return "\n".join(texts)
        return json.dumps(result.model_dump(mode="json"))

    async def close(self) -> None:
        await self._stack.aclose()
        self._servers.clear()
        self._stack = AsyncExitStack()
        logger.info("Disconnected from MCP servers")
