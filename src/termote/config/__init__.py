"""Configuration: Pydantic models for termote settings."""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Any

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field

DEFAULT_SERVER_URL = "https://termote.agi.build"
DEFAULT_CONFIG_PATH = Path("~/.config/termote/config.json")
SESSION_ID_ENV = "TERMOTE_SESSION_ID"


def default_shell() -> str:
    """The shell to share: ``$SHELL``, else the platform's usual one."""
    shell = os.environ.get("SHELL")
    if shell:
        return shell
    if sys.platform == "win32":
        return "powershell.exe"
    if sys.platform == "darwin":
        return "/bin/zsh"
    return "/bin/bash"


class RelayConfig(BaseModel):
    """Connection behaviour of the relay transport. Durations in seconds."""

    initial_delay: float = Field(default=1.0, gt=0)
    max_delay: float = Field(default=30.0, gt=0)
    backoff_factor: float = Field(default=1.5, ge=1)
    heartbeat_interval: float = Field(
        default=30.0, gt=0, description="Seconds between PING frames"
    )
    heartbeat_timeout: float | None = Field(
        default=10.0,
        gt=0,
        description=(
            "Drop and reconnect when nothing was received this long after a "
            "PING. Capped at the heartbeat interval; None disables the check."
        ),
    )
    open_timeout: float = Field(
        default=10.0, gt=0, description="Timeout for the WebSocket handshake"
    )


class TerminalConfig(BaseModel):
    """Local shell and terminal handling."""

    shell: str = Field(default_factory=default_shell)
    default_cols: int = Field(default=80, gt=0)
    default_rows: int = Field(default=24, gt=0)
    replay_bytes: int = Field(
        default=256_000, gt=0, description="Ceiling of the output replay buffer"
    )
    command_delay: float = Field(
        default=0.3,
        ge=0,
        description="Settle time before a startup command is typed into the shell",
    )
    exit_grace: float = Field(
        default=0.1,
        ge=0,
        description="Cleanup grace period after a session end or fatal error",
    )
    kill_timeout: float = Field(
        default=5.0,
        gt=0,
        description="How long to wait for the shell to exit after an interrupt",
    )


class TermoteConfig(BaseModel):
    """Top-level termote configuration."""

    server_url: str = Field(default=DEFAULT_SERVER_URL)
    token: str | None = Field(default=None, description="Bearer token for the relay")
    log_file: str | None = Field(default=None)
    relay: RelayConfig = Field(default_factory=RelayConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)

    @classmethod
    def load(cls, config_path: str | None = None) -> TermoteConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            TERMOTE_SERVER_URL          - Relay server base URL
            TERMOTE_TOKEN               - Bearer token (access token from login)
            TERMOTE_HEARTBEAT_INTERVAL  - Seconds between heartbeat pings
            TERMOTE_LOG_FILE            - Write logs to this file
        """
        # .env next to where termote is started; real env vars win
        load_dotenv(find_dotenv(usecwd=True))

        config_data: dict[str, Any] = {}

        path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH.expanduser()
        if path.is_file():
            with open(path) as f:
                config_data = json.load(f)
            # Accept the login flow's key for the token
            if "token" not in config_data and config_data.get("accessToken"):
                config_data["token"] = config_data.pop("accessToken")
            if "server_url" not in config_data and config_data.get("serverUrl"):
                config_data["server_url"] = config_data.pop("serverUrl")

        env_server_url = os.environ.get("TERMOTE_SERVER_URL")
        if env_server_url:
            config_data["server_url"] = env_server_url

        env_token = os.environ.get("TERMOTE_TOKEN")
        if env_token:
            config_data["token"] = env_token

        env_log_file = os.environ.get("TERMOTE_LOG_FILE")
        if env_log_file:
            config_data["log_file"] = env_log_file

        env_heartbeat = os.environ.get("TERMOTE_HEARTBEAT_INTERVAL")
        if env_heartbeat:
            relay = config_data.get("relay", {})
            relay["heartbeat_interval"] = float(env_heartbeat)
            config_data["relay"] = relay

        config = cls.model_validate(config_data)
        config.server_url = config.server_url.rstrip("/")
        return config
