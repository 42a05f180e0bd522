"""
Settings Store

Owns the application settings and the managed host registry. Readers take
the shared side of a reader/writer lock; every mutation takes the exclusive
side, works on a copy, re-normalizes the registry, persists it and only then
swaps it in, so a failed write leaves the previous state intact.
"""

import logging
import re
import secrets
import socket
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional

from ..core.exceptions import ConfigurationError, NotFoundError, ValidationError
from ..core.models import DEFAULT_SOCKET_PATH, ManagedHost, TransportKind, utcnow
from ..storage import ControlPlaneStore
from ..utils.locks import RWLock
from .models import (
    MIN_SECRET_LENGTH,
    AppSettings,
    default_callback_url,
    generate_callback_secret,
)

logger = logging.getLogger(__name__)

LOCAL_HOST_ID = "local"
MASKED_SECRET = "********"

_LOOPBACK_CALLBACK = re.compile(r"^http://127\.0\.0\.1:\d+$")

# Host ids, the callback secret and URL and the jail defaults are written
# into the managed action and jail.local, which fail2ban feeds to a root shell.
_HOST_ID = re.compile(r"[A-Za-z0-9_-]+")
_SECRET = re.compile(r"[A-Za-z0-9._~+/=-]+")
_CALLBACK_URL = re.compile(r"https?://[A-Za-z0-9.:\[\]-]+(/[A-Za-z0-9._~/-]*)?")
_JAIL_VALUE = re.compile(r"[A-Za-z0-9._:/+ -]*")
_IGNORE_ENTRY = re.compile(r"[A-Za-z0-9._:/-]+")

JAIL_DEFAULT_FIELDS = (
    "bantime",
    "findtime",
    "banaction",
    "banaction_allports",
    "chain",
    "bantime_rndtime",
)

SettingsListener = Callable[[AppSettings], None]


def generate_host_id() -> str:
    """``srv-`` followed by 16 hex characters."""
    return "srv-" + secrets.token_hex(8)


def validate_host_id(host_id: str) -> str:
    """
    Check that a host id is safe to embed in the callback action.

    Raises:
        ValidationError: the id holds anything but letters, digits, '-' and '_'
    """
    if not _HOST_ID.fullmatch(host_id or ""):
        raise ValidationError(
            f"invalid server id {host_id!r}: only letters, digits, '-' and '_' are allowed",
            field="id",
        )
    return host_id


def normalize_hosts(hosts: List[ManagedHost], now: datetime, hostname: str = "") -> List[ManagedHost]:
    """
    Bring a host registry into its canonical form.

    An empty registry gets one disabled local host. Missing ids, names and
    timestamps are filled in, local hosts get the default socket, a disabled
    host is neither default nor waiting for a restart, and the first enabled
    host becomes default when none is marked. Hosts are ordered by creation.
    """
    if not hosts:
        return [
            ManagedHost(
                id=LOCAL_HOST_ID,
                name="Fail2ban",
                transport=TransportKind.LOCAL,
                socket_path=DEFAULT_SOCKET_PATH,
                hostname=hostname,
                enabled=False,
                created_at=now,
                updated_at=now,
            )
        ]

    has_default = False
    for host in hosts:
        if not host.id:
            host.id = generate_host_id()
        if not host.name:
            host.name = f"Fail2ban Server {host.id}"
        if host.created_at is None:
            host.created_at = now
        if host.updated_at is None:
            host.updated_at = now
        if host.transport == TransportKind.LOCAL and not host.socket_path:
            host.socket_path = DEFAULT_SOCKET_PATH
        if host.enabled is None:
            host.enabled = host.transport != TransportKind.LOCAL
        if not host.enabled:
            host.restart_needed = False
            host.is_default = False
        if host.is_default:
            if has_default:
                host.is_default = False
            has_default = True

    if not has_default:
        for host in hosts:
            if host.enabled:
                host.is_default = True
                break

    return sorted(hosts, key=lambda h: h.created_at)


def _check_secret(secret: str, error_type=ValidationError) -> None:
    if len(secret) < MIN_SECRET_LENGTH:
        raise error_type(
            f"callback secret must be at least {MIN_SECRET_LENGTH} characters long"
        )
    if not _SECRET.fullmatch(secret):
        raise error_type(
            "callback secret may only contain letters, digits and the characters . _ ~ + / = -"
        )


def _check_callback_url(url: str, error_type=ValidationError) -> None:
    if url and not _CALLBACK_URL.fullmatch(url):
        raise error_type(f"invalid callback URL {url!r}")


def _check_jail_defaults(settings: AppSettings) -> None:
    for name in JAIL_DEFAULT_FIELDS:
        value = str(getattr(settings, name))
        if not _JAIL_VALUE.fullmatch(value):
            raise ValidationError(f"invalid value for {name}: {value!r}", field=name)
    for entry in map(str, settings.ignore_ips):
        if not _IGNORE_ENTRY.fullmatch(entry):
            raise ValidationError(f"invalid ignoreip entry {entry!r}", field="ignore_ips")


def _validate_host_fields(host: ManagedHost) -> None:
    if host.id:
        validate_host_id(host.id)
    if host.transport == TransportKind.SSH:
        if not host.host:
            raise ValidationError("SSH hosts require a host address", field="host")
        if not host.ssh_user:
            raise ValidationError("SSH hosts require a user", field="ssh_user")
    elif host.transport == TransportKind.AGENT:
        if not host.agent_url:
            raise ValidationError("agent hosts require an agent URL", field="agent_url")
        if not host.agent_url.startswith(("http://", "https://")):
            raise ValidationError("agent URL must be http or https", field="agent_url")
    if not 0 < host.port < 65536:
        raise ValidationError(f"invalid port {host.port}", field="port")


class SettingsStore:
    """
    Explicitly owned settings and host registry.

    Usage:
        store = SettingsStore(ControlPlaneStore(path))
        store.load()
        host = store.default_host()
    """

    def __init__(
        self,
        storage: ControlPlaneStore,
        callback_url: Optional[str] = None,
        callback_secret: Optional[str] = None,
        hostname: Optional[str] = None,
    ):
        self._storage = storage
        self._callback_url_override = (callback_url or "").strip().rstrip("/") or None
        self._callback_secret_override = (callback_secret or "").strip() or None
        self._hostname = hostname if hostname is not None else socket.gethostname()
        self._lock = RWLock()
        self._settings: Optional[AppSettings] = None
        self._listeners: List[SettingsListener] = []

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def load(self) -> AppSettings:
        """
        Load settings and hosts from storage, apply defaults and persist.

        Raises:
            ConfigurationError: the callback secret is too short or unsafe, or
                the configured callback URL is not a plain http(s) URL
        """
        data = self._storage.load_settings()
        settings = AppSettings.from_dict(data or {})
        settings.servers = self._storage.list_servers()

        if self._callback_secret_override:
            settings.callback_secret = self._callback_secret_override
        elif not settings.callback_secret:
            settings.callback_secret = generate_callback_secret()
            logger.info("Generated a new callback secret")
        _check_secret(settings.callback_secret, ConfigurationError)

        if self._callback_url_override:
            settings.callback_url = self._callback_url_override
        elif not settings.callback_url or _LOOPBACK_CALLBACK.match(settings.callback_url):
            settings.callback_url = default_callback_url(settings.port)
        _check_callback_url(settings.callback_url, ConfigurationError)

        settings.servers = normalize_hosts(settings.servers, utcnow(), self._hostname)
        settings.restart_needed = any(h.restart_needed for h in settings.servers)

        with self._lock.write():
            self._persist(settings)
            self._settings = settings
        logger.info(f"Settings loaded with {len(settings.servers)} managed host(s)")
        return settings.copy()

    def reload(self) -> AppSettings:
        return self.load()

    @property
    def is_loaded(self) -> bool:
        return self._settings is not None

    def add_listener(self, listener: SettingsListener) -> None:
        """Call ``listener`` with the new settings after every update."""
        self._listeners.append(listener)

    def _require(self) -> AppSettings:
        if self._settings is None:
            raise ConfigurationError("settings not loaded")
        return self._settings

    def _persist(self, settings: AppSettings) -> None:
        self._storage.save_settings(settings.to_dict(include_servers=False))
        self._storage.save_servers(settings.servers)

    def _commit(self, candidate: AppSettings) -> None:
        """Normalize, persist and swap in ``candidate``. Call with the write lock held."""
        candidate.servers = normalize_hosts(candidate.servers, utcnow(), self._hostname)
        candidate.restart_needed = any(h.restart_needed for h in candidate.servers)
        self._persist(candidate)
        self._settings = candidate

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self) -> AppSettings:
        """A copy of the current settings."""
        with self._lock.read():
            return self._require().copy()

    @property
    def callback_url(self) -> str:
        with self._lock.read():
            return self._require().callback_url

    @property
    def callback_secret(self) -> str:
        with self._lock.read():
            return self._require().callback_secret

    @property
    def max_log_lines(self) -> int:
        with self._lock.read():
            return self._require().max_log_lines

    def list_hosts(self) -> List[ManagedHost]:
        with self._lock.read():
            return [replace(h, tags=list(h.tags)) for h in self._require().servers]

    def get_host(self, host_id: str) -> Optional[ManagedHost]:
        with self._lock.read():
            for host in self._require().servers:
                if host.id == host_id:
                    return replace(host, tags=list(host.tags))
        return None

    def host_by_hostname(self, hostname: str) -> Optional[ManagedHost]:
        """Case-insensitive match on the host's reported hostname."""
        wanted = hostname.strip().lower()
        if not wanted:
            return None
        with self._lock.read():
            for host in self._require().servers:
                if host.hostname and host.hostname.lower() == wanted:
                    return replace(host, tags=list(host.tags))
        return None

    def default_host(self) -> Optional[ManagedHost]:
        with self._lock.read():
            for host in self._require().servers:
                if host.is_default and host.enabled:
                    return replace(host, tags=list(host.tags))
        return None

    # =========================================================================
    # Mutations
    # =========================================================================

    def update(self, new: AppSettings) -> AppSettings:
        """
        Replace the settings blob. The host registry is left untouched.

        Changing the jail defaults marks every enabled host as needing a
        restart.

        Raises:
            ValidationError: the callback secret is too short, or the secret,
                callback URL or a jail default holds characters that are not
                safe to write into the managed files
        """
        new = new.copy()
        new.callback_secret = new.callback_secret.strip()
        _check_secret(new.callback_secret)
        new.callback_url = new.callback_url.strip().rstrip("/")
        _check_callback_url(new.callback_url)
        _check_jail_defaults(new)
        if new.max_log_lines <= 0:
            raise ValidationError("max_log_lines must be positive", field="max_log_lines")

        with self._lock.write():
            current = self._require()
            candidate = new
            if candidate.port != current.port and candidate.port > 0:
                if not candidate.callback_url or _LOOPBACK_CALLBACK.match(candidate.callback_url):
                    candidate.callback_url = default_callback_url(candidate.port)
            if not candidate.callback_url:
                candidate.callback_url = current.callback_url

            candidate.servers = [replace(h, tags=list(h.tags)) for h in current.servers]
            if candidate.jail_defaults_signature() != current.jail_defaults_signature():
                for host in candidate.servers:
                    host.restart_needed = True
                logger.info("Jail defaults changed, managed hosts need a restart")

            self._commit(candidate)
            result = candidate.copy()

        for listener in self._listeners:
            listener(result)
        return result

    def upsert_host(self, host: ManagedHost) -> ManagedHost:
        """
        Create a host, or update the one with the same id.

        Raises:
            ValidationError: required transport fields are missing
        """
        host = replace(host, tags=list(host.tags))
        _validate_host_fields(host)
        now = utcnow()

        with self._lock.write():
            candidate = self._require().copy()
            existing = next((h for h in candidate.servers if host.id and h.id == host.id), None)

            if not host.id:
                host.id = generate_host_id()
            if existing is not None:
                if host.enabled is None:
                    host.enabled = existing.enabled
                if not host.agent_secret or host.agent_secret == MASKED_SECRET:
                    host.agent_secret = existing.agent_secret
                host.created_at = existing.created_at
                host.restart_needed = existing.restart_needed
            else:
                host.created_at = host.created_at or now
                if host.enabled is None:
                    host.enabled = host.transport != TransportKind.LOCAL
            host.updated_at = now

            if not host.enabled:
                host.is_default = False
            if host.is_default:
                for other in candidate.servers:
                    other.is_default = False

            if existing is not None:
                candidate.servers = [host if h.id == host.id else h for h in candidate.servers]
            else:
                candidate.servers.append(host)

            self._commit(candidate)
            stored = next(h for h in candidate.servers if h.id == host.id)
            logger.info(f"Upserted host {stored.id} ({stored.transport.value}, enabled={stored.enabled})")
            return replace(stored, tags=list(stored.tags))

    def delete_host(self, host_id: str) -> None:
        with self._lock.write():
            candidate = self._require().copy()
            remaining = [h for h in candidate.servers if h.id != host_id]
            if len(remaining) == len(candidate.servers):
                raise NotFoundError(f"server {host_id} not found", kind="server", name=host_id)
            candidate.servers = remaining
            self._commit(candidate)
        logger.info(f"Deleted host {host_id}")

    def set_default_host(self, host_id: str) -> ManagedHost:
        """Make ``host_id`` the default, enabling it if necessary."""
        with self._lock.write():
            candidate = self._require().copy()
            target = None
            for host in candidate.servers:
                if host.id == host_id:
                    target = host
                    host.is_default = True
                    host.enabled = True
                    host.updated_at = utcnow()
                else:
                    host.is_default = False
            if target is None:
                raise NotFoundError(f"server {host_id} not found", kind="server", name=host_id)
            self._commit(candidate)
            return replace(target, tags=list(target.tags))

    def mark_restart_needed(self, host_id: str) -> None:
        self._set_restart_flag(host_id, True)

    def mark_restart_done(self, host_id: str) -> None:
        self._set_restart_flag(host_id, False)

    def _set_restart_flag(self, host_id: str, value: bool) -> None:
        with self._lock.write():
            candidate = self._require().copy()
            for host in candidate.servers:
                if host.id == host_id:
                    host.restart_needed = value
                    break
            else:
                raise NotFoundError(f"server {host_id} not found", kind="server", name=host_id)
            self._commit(candidate)
