"""External tool catalogs exposed to the completion loop."""

from .mcp_bridge import McpServerConfig, ToolCatalogBridge, load_server_configs

__all__ = ["McpServerConfig", "ToolCatalogBridge", "load_server_configs"]
