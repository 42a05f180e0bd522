"""
FastAPI Dependency Injection Module

Provides centralized dependency injection for the f2bctl web interface.
Every long-lived component (storage, settings store, connector manager,
broadcast hub, event pipeline) is created lazily by the container on first
use and cached; the application lifespan forces creation at startup and
tears them down at shutdown.

Usage in routes:
    from f2bctl.web.dependencies import get_manager

    @router.get("/example")
    async def example(manager: ConnectorManager = Depends(get_manager)):
        ...

Usage in tests:
    from f2bctl.web.dependencies import DependencyOverrides

    with DependencyOverrides() as overrides:
        overrides.set_manager(fake_manager)
        # Run tests with mocked dependencies
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, Query

logger = logging.getLogger(__name__)


# =============================================================================
# Dependency Container
# =============================================================================


@dataclass
class _DependencyContainer:
    """
    Internal container for managing dependency instances.

    Provides lazy initialization and override capability for testing.
    """

    _instances: Dict[str, Any] = field(default_factory=dict)
    _overrides: Dict[str, Any] = field(default_factory=dict)
    _factories: Dict[str, Callable[[], Any]] = field(default_factory=dict)

    def register(self, name: str, factory: Callable[[], Any]) -> None:
        """Register a factory function for creating a dependency."""
        self._factories[name] = factory

    def get(self, name: str) -> Any:
        """
        Get a dependency instance.

        Order of resolution:
        1. Override (if set for testing)
        2. Cached instance
        3. Create new instance via factory
        """
        if name in self._overrides:
            return self._overrides[name]

        if name in self._instances:
            return self._instances[name]

        if name in self._factories:
            instance = self._factories[name]()
            self._instances[name] = instance
            return instance

        raise KeyError(f"Unknown dependency: {name}")

    def set_override(self, name: str, instance: Any) -> None:
        self._overrides[name] = instance

    def reset(self, name: Optional[str] = None) -> None:
        """
        Reset cached instances.

        Args:
            name: Specific dependency to reset, or None for all
        """
        if name:
            self._instances.pop(name, None)
        else:
            self._instances.clear()

    def reset_all(self) -> None:
        """Reset all instances and overrides."""
        self._instances.clear()
        self._overrides.clear()


# Global container instance
_container = _DependencyContainer()


# =============================================================================
# Dependency Registration
# =============================================================================


def _create_config():
    """Factory for WebConfig."""
    from f2bctl.web.config import get_config as get_global_config

    return get_global_config()


def _create_storage():
    """Factory for ControlPlaneStore."""
    from f2bctl.storage import ControlPlaneStore

    config = _container.get("config")
    db_path = config.database_path
    db_path.parent.mkdir(parents=True, exist_ok=True)

    store = ControlPlaneStore(db_path)
    store.initialize()
    return store


def _create_settings_store():
    """Factory for SettingsStore."""
    from f2bctl.settings import SettingsStore

    config = _container.get("config")
    store = SettingsStore(
        _container.get("storage"),
        callback_url=config.callback_url,
        callback_secret=config.callback_secret,
    )
    store.load()
    return store


def _create_hub():
    """Factory for BroadcastHub."""
    from f2bctl.events import BroadcastHub

    config = _container.get("config")
    return BroadcastHub(
        heartbeat_interval=config.ws_heartbeat_interval,
        inbox_size=config.broadcast_queue_size,
        observer_queue_size=config.ws_queue_size,
    )


def _create_manager():
    """Factory for ConnectorManager."""
    from f2bctl.fail2ban import ConnectorManager

    config = _container.get("config")
    return ConnectorManager(_container.get("settings_store"), timeout=config.connector_timeout)


def _create_pipeline():
    """Factory for EventPipeline."""
    from f2bctl.events import EventPipeline

    return EventPipeline(
        _container.get("settings_store"),
        _container.get("storage"),
        _container.get("hub"),
    )


_container.register("config", _create_config)
_container.register("storage", _create_storage)
_container.register("settings_store", _create_settings_store)
_container.register("hub", _create_hub)
_container.register("manager", _create_manager)
_container.register("pipeline", _create_pipeline)


# =============================================================================
# FastAPI Dependency Functions
# =============================================================================


def get_config():
    """FastAPI dependency for WebConfig."""
    return _container.get("config")


def get_storage():
    """FastAPI dependency for ControlPlaneStore."""
    return _container.get("storage")


def get_settings_store():
    """
    FastAPI dependency for SettingsStore.

    Usage:
        @router.get("/")
        async def handler(settings: SettingsStore = Depends(get_settings_store)):
            ...
    """
    return _container.get("settings_store")


def get_hub():
    """FastAPI dependency for BroadcastHub."""
    return _container.get("hub")


def get_manager():
    """FastAPI dependency for ConnectorManager."""
    return _container.get("manager")


def get_pipeline():
    """FastAPI dependency for EventPipeline."""
    return _container.get("pipeline")


def get_connector(
    server_id: Optional[str] = Query(None, alias="serverId"),
    manager=Depends(get_manager),
):
    """
    FastAPI dependency for the connector selected by ``?serverId=``.

    Falls back to the default host when the parameter is absent.
    """
    return manager.resolve(server_id)


# =============================================================================
# Testing Utilities
# =============================================================================


class DependencyOverrides:
    """
    Context manager for temporarily overriding dependencies in tests.

    Usage:
        def test_example(store):
            with DependencyOverrides() as overrides:
                overrides.set_storage(store)
                assert get_storage() is store
    """

    def __init__(self):
        self._original_overrides: Dict[str, Any] = {}

    def __enter__(self) -> "DependencyOverrides":
        self._original_overrides = dict(_container._overrides)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        _container._overrides.clear()
        _container._overrides.update(self._original_overrides)

    def set_config(self, config) -> "DependencyOverrides":
        _container.set_override("config", config)
        return self

    def set_storage(self, storage) -> "DependencyOverrides":
        _container.set_override("storage", storage)
        return self

    def set_settings_store(self, store) -> "DependencyOverrides":
        _container.set_override("settings_store", store)
        return self

    def set_hub(self, hub) -> "DependencyOverrides":
        _container.set_override("hub", hub)
        return self

    def set_manager(self, manager) -> "DependencyOverrides":
        _container.set_override("manager", manager)
        return self

    def set_pipeline(self, pipeline) -> "DependencyOverrides":
        _container.set_override("pipeline", pipeline)
        return self

    def set(self, name: str, instance: Any) -> "DependencyOverrides":
        """Set any dependency override by name."""
        _container.set_override(name, instance)
        return self


def reset_dependencies(name: Optional[str] = None) -> None:
    """
    Reset cached dependency instances.

    Args:
        name: Specific dependency to reset, or None for all
    """
    _container.reset(name)


def reset_all_dependencies() -> None:
    """Reset all dependency instances and overrides."""
    _container.reset_all()
