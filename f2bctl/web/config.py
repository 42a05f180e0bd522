"""
Web Interface Configuration

Process-level settings for the f2bctl HTTP server. Everything that belongs to
the managed installations (callback URL, jail defaults, hosts) lives in the
SettingsStore instead; values here only seed it.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from ..utils.paths import get_data_dir


def _env_bool(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class WebConfig:
    """Configuration for the web interface."""

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = False

    # Security
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:8080"])
    api_key: Optional[str] = None
    require_auth: bool = False

    # Paths
    data_dir: Path = field(default_factory=get_data_dir)

    # Seeds for the settings store
    callback_url: Optional[str] = None
    callback_secret: Optional[str] = None

    # Connectors
    connector_timeout: float = 30.0  # seconds

    # WebSocket settings
    ws_heartbeat_interval: float = 30.0  # seconds
    ws_queue_size: int = 256
    broadcast_queue_size: int = 256

    @property
    def database_path(self) -> Path:
        return self.data_dir / "f2bctl.db"

    @classmethod
    def from_env(cls) -> "WebConfig":
        """Create configuration from environment variables."""
        data_dir = os.getenv("F2BCTL_DATA_DIR")
        return cls(
            host=os.getenv("F2BCTL_HOST", "0.0.0.0"),
            port=int(os.getenv("F2BCTL_PORT", "8080")),
            debug=_env_bool("F2BCTL_DEBUG"),
            cors_origins=_env_list("F2BCTL_CORS_ORIGINS", ["http://localhost:8080"]),
            api_key=os.getenv("F2BCTL_API_KEY") or None,
            require_auth=_env_bool("F2BCTL_REQUIRE_AUTH"),
            data_dir=Path(data_dir) if data_dir else get_data_dir(),
            callback_url=os.getenv("F2BCTL_CALLBACK_URL") or None,
            callback_secret=os.getenv("F2BCTL_CALLBACK_SECRET") or None,
            connector_timeout=float(os.getenv("F2BCTL_CONNECTOR_TIMEOUT", "30")),
            ws_heartbeat_interval=float(os.getenv("F2BCTL_WS_HEARTBEAT", "30")),
            ws_queue_size=int(os.getenv("F2BCTL_WS_QUEUE_SIZE", "256")),
            broadcast_queue_size=int(os.getenv("F2BCTL_BROADCAST_QUEUE_SIZE", "256")),
        )


# Global configuration instance
_config: Optional[WebConfig] = None


def get_config() -> WebConfig:
    """Get the global web configuration."""
    global _config
    if _config is None:
        _config = WebConfig.from_env()
    return _config


def set_config(config: WebConfig) -> None:
    """Set the global web configuration."""
    global _config
    _config = config
