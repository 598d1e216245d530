"""Cursor deeplink generation for registering this server in the editor."""
from __future__ import annotations

import base64
import json
from typing import Any, Dict
from urllib.parse import quote_plus

from .config import Settings

SERVER_KEY = "laravel-telescope"
COMMAND = "telescope-mcp"
DEEPLINK_PREFIX = "cursor://settings/mcp?config="


def cursor_config(settings: Settings) -> Dict[str, Any]:
    """MCP client configuration block pointing Cursor at this server."""
    return {
        "mcpServers": {
            SERVER_KEY: {
                "command": COMMAND,
                "args": [],
                "env": {
                    "DB_HOST": settings.db_host,
                    "DB_PORT": str(settings.db_port),
                    "DB_DATABASE": settings.db_name,
                    "DB_USERNAME": settings.db_user,
                    "DB_PASSWORD": settings.db_password,
                    "MCP_SERVER_NAME": settings.server_name,
                },
            }
        }
    }


def config_json(config: Dict[str, Any]) -> str:
    return json.dumps(config, indent=4, ensure_ascii=False)


def deeplink(config: Dict[str, Any]) -> str:
    encoded = base64.b64encode(config_json(config).encode("utf-8")).decode("ascii")
    return DEEPLINK_PREFIX + quote_plus(encoded)


def render_instructions(settings: Settings) -> str:
    """Everything the ``deeplink`` command prints."""
    config = cursor_config(settings)
    password = "***" if settings.db_password else "(empty)"
    return "\n".join([
        "🔗 Laravel Telescope MCP Server - Cursor Deeplink Generator",
        "",
        "📋 Current Configuration:",
        f"  Database Host: {settings.db_host}",
        f"  Database Port: {settings.db_port}",
        f"  Database Name: {settings.db_name}",
        f"  Database User: {settings.db_user}",
        f"  Database Pass: {password}",
        "",
        "🔗 Generated Cursor Deeplink:",
        deeplink(config),
        "",
        "📝 How to use:",
        "1. Copy the deeplink above",
        "2. Paste it in your browser or click it directly",
        "3. Cursor will open and prompt to add the MCP server",
        "4. Accept the configuration to add the Laravel Telescope MCP server",
        "",
        "📄 Raw JSON Configuration:",
        config_json(config),
        "",
    ])
