"""
ToolBridge Configuration - Configuration loading and validation.

This module provides the Config class for managing ToolBridge configuration
from both global (~/.toolbridge/config.yaml) and local (.toolbridge/config.yaml)
sources, plus the ProviderConfig model describing one tool provider.
"""

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError


class ConfigError(Exception):
    """Raised when there's a configuration error."""

    pass


DEFAULT_MODEL = "gemini-2.5-flash-lite"

DEFAULT_SYSTEM_INSTRUCTION = (
    "You are a helpful AI assistant.\n"
    "When calling image-generation tools (e.g. generate-image, create_image, generate_image), "
    "ALWAYS translate the prompt/description argument into English before passing it to the tool, "
    "even if the user wrote it in another language."
)

TransportKind = Literal["streamable-http", "stdio"]


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProviderConfig(BaseModel):
    """Identity and connection parameters for one tool provider."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = ""
    enabled: bool = True
    transport: TransportKind = "stdio"
    # streamable-http only
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    # stdio only
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    created_at: str = Field(default_factory=_utcnow, alias="createdAt")
    updated_at: str = Field(default_factory=_utcnow, alias="updatedAt")

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def clean_headers(self) -> Dict[str, str]:
        """Headers with blank keys dropped."""
        return {k: v for k, v in self.headers.items() if k.strip()}

    def validate_transport(self) -> None:
        """
        Reject a config that cannot possibly connect.

        Raises:
            ConfigError: Missing URL or command, or a URL that is not an
                absolute http(s) URL.
        """
        if self.transport == "streamable-http":
            if not self.url:
                raise ConfigError(f"Provider '{self.id}': a URL is required for streamable-http")
            parsed = urlparse(self.url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ConfigError(f"Provider '{self.id}': malformed URL {self.url!r}")
        elif not self.command:
            raise ConfigError(f"Provider '{self.id}': a command is required for stdio")


class ModelConfig(BaseModel):
    """Configuration for the model-calling provider."""

    provider: str = "google"
    name: str = DEFAULT_MODEL
    api_key: Optional[str] = None
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION
    timeout: float = 120.0


class RegistryConfig(BaseModel):
    """Timeouts for provider sessions, in seconds."""

    connect_timeout: float = 30.0
    request_timeout: float = 60.0


class BridgeConfig(BaseModel):
    """Complete ToolBridge configuration schema."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    servers: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class Config:
    """
    ToolBridge configuration manager.

    Handles loading, merging, and validating configuration from:
    - Global: ~/.toolbridge/config.yaml
    - Local: .toolbridge/config.yaml (project-specific)

    Local configuration overrides global configuration. Provider entries
    live under ``servers``, keyed by provider id.

    Example:
        >>> config = Config.load()
        >>> for server in config.get_servers():
        ...     print(server.id, server.transport)
        >>> config.set_server_enabled("files", False)
        >>> config.save()
    """

    GLOBAL_CONFIG_DIR = Path.home() / ".toolbridge"
    LOCAL_CONFIG_DIR = Path(".toolbridge")

    def __init__(
        self,
        global_config: Optional[Dict[str, Any]] = None,
        local_config: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize Config.

        Args:
            global_config: Global configuration dictionary.
            local_config: Local (project) configuration dictionary.
        """
        self._global_config = global_config or {}
        self._local_config = local_config or {}
        self._merged: Optional[BridgeConfig] = None

    @classmethod
    def load(cls) -> "Config":
        """
        Load configuration from default locations.

        Returns:
            Config instance with loaded configuration.
        """
        global_config = cls._load_yaml(cls.GLOBAL_CONFIG_DIR / "config.yaml")
        local_config = cls._load_yaml(cls._find_local_config())

        return cls(global_config=global_config, local_config=local_config)

    @classmethod
    def _load_yaml(cls, path: Optional[Path]) -> Dict[str, Any]:
        """Load YAML file if it exists."""
        if path is None or not path.exists():
            return {}

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
                return data if data else {}
        except Exception as e:
            raise ConfigError(f"Failed to load config from {path}: {e}")

    @classmethod
    def _find_local_config(cls) -> Optional[Path]:
        """Find the local config file by walking up the directory tree."""
        current = Path.cwd()
        while current != current.parent:
            config_path = current / ".toolbridge" / "config.yaml"
            if config_path.exists():
                return config_path
            current = current.parent
        return None

    def get_merged_config(self) -> Dict[str, Any]:
        """Get the merged configuration as a dictionary."""
        merged = self._deep_merge(self._global_config.copy(), self._local_config)
        return merged

    @property
    def merged(self) -> BridgeConfig:
        """Get the validated merged configuration."""
        if self._merged is None:
            try:
                merged_dict = self.get_merged_config()
                self._merged = BridgeConfig(**merged_dict)
            except ValidationError as e:
                raise ConfigError(f"Invalid configuration: {e}")
        return self._merged

    # ── Model settings ────────────────────────────────────────────────────

    def get_model_name(self) -> str:
        """Model name, with ``LLM_MODEL`` taking precedence over config."""
        return os.environ.get("LLM_MODEL") or self.merged.model.name

    def get_api_key(self) -> Optional[str]:
        """
        Get the API key for the model provider.

        Checks config first, then environment variables.
        """
        if self.merged.model.api_key:
            return self.merged.model.api_key
        return os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")

    # ── Provider entries ──────────────────────────────────────────────────

    def get_servers(self, enabled_only: bool = False) -> List[ProviderConfig]:
        """
        Get configured tool providers.

        Args:
            enabled_only: Skip providers whose ``enabled`` flag is off.

        Raises:
            ConfigError: If an entry does not match the provider schema.
        """
        servers: List[ProviderConfig] = []
        for server_id, entry in self.merged.servers.items():
            try:
                server = ProviderConfig(**{**(entry or {}), "id": server_id})
            except ValidationError as e:
                raise ConfigError(f"Invalid server '{server_id}': {e}")
            if enabled_only and not server.enabled:
                continue
            servers.append(server)
        return servers

    def get_server(self, server_id: str) -> Optional[ProviderConfig]:
        """Get a single provider by id."""
        for server in self.get_servers():
            if server.id == server_id:
                return server
        return None

    def add_server(self, server: ProviderConfig, global_: bool = False) -> None:
        """
        Add or replace a provider entry.

        Args:
            server: The provider to store.
            global_: Whether to store globally or locally.
        """
        server.validate_transport()
        config = self._global_config if global_ else self._local_config
        entry = server.model_dump(exclude={"id"}, exclude_none=True)
        entry["updated_at"] = _utcnow()
        config.setdefault("servers", {})[server.id] = entry
        self._merged = None  # Reset cache

    def remove_server(self, server_id: str, global_: bool = False) -> bool:
        """Remove a provider entry. Returns True if it existed."""
        config = self._global_config if global_ else self._local_config
        servers = config.get("servers") or {}
        if server_id not in servers:
            return False
        del servers[server_id]
        self._merged = None
        return True

    def set_server_enabled(self, server_id: str, enabled: bool, global_: bool = False) -> None:
        """Toggle a provider's ``enabled`` flag."""
        config = self._global_config if global_ else self._local_config
        entry = config.setdefault("servers", {}).setdefault(server_id, {})
        entry["enabled"] = enabled
        entry["updated_at"] = _utcnow()
        self._merged = None

    # ── Persistence ───────────────────────────────────────────────────────

    def save(self) -> None:
        """Save configuration to files."""
        self._save_yaml(self.GLOBAL_CONFIG_DIR / "config.yaml", self._global_config)

        local_path = self._find_local_config()
        if local_path:
            self._save_yaml(local_path, self._local_config)

    def _save_yaml(self, path: Path, data: Dict[str, Any]) -> None:
        """Save data to a YAML file."""
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result
