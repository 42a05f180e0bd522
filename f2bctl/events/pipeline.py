"""
Event Ingestion Pipeline

Turns a ban/unban callback from a managed host into a stored BanEvent and a
broadcast to live observers.

Stages, in order:
    received -> secret_validated -> host_resolved -> address_validated
    -> persisted -> broadcast -> acknowledged

A failure at any stage raises with ``error.stage`` set to the last stage the
event reached. Nothing is persisted or broadcast unless every earlier stage
succeeded.
"""

import asyncio
import hmac
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from ..core.exceptions import AuthError, ControlPlaneError, NotFoundError
from ..core.models import BanEvent, EventKind, ManagedHost, utcnow
from ..fail2ban.jails import validate_ip, validate_name
from ..settings import SettingsStore
from ..storage import ControlPlaneStore
from .hub import BroadcastHub

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    RECEIVED = "received"
    SECRET_VALIDATED = "secret_validated"
    HOST_RESOLVED = "host_resolved"
    ADDRESS_VALIDATED = "address_validated"
    PERSISTED = "persisted"
    BROADCAST = "broadcast"
    ACKNOWLEDGED = "acknowledged"


@dataclass
class Notification:
    """Raw callback payload as sent by the managed action."""

    ip: str
    jail: str
    server_id: str = ""
    hostname: str = ""
    failures: str = ""
    logs: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Notification":
        return cls(
            ip=str(data.get("ip") or "").strip(),
            jail=str(data.get("jail") or "").strip(),
            server_id=str(data.get("serverId") or data.get("server_id") or "").strip(),
            hostname=str(data.get("hostname") or "").strip(),
            failures=str(data.get("failures") or ""),
            logs=str(data.get("logs") or ""),
        )


@dataclass
class PipelineResult:
    event: BanEvent
    stage: Stage = Stage.ACKNOWLEDGED
    delivered: bool = True


def parse_failures(value: str) -> int:
    try:
        return max(0, int(str(value).strip()))
    except ValueError:
        return 0


def trim_log_lines(logs: str, max_lines: int) -> str:
    """Keep the last ``max_lines`` non-empty lines."""
    lines = [line for line in logs.splitlines() if line.strip()]
    if max_lines > 0 and len(lines) > max_lines:
        lines = lines[-max_lines:]
    return "\n".join(lines)


class EventPipeline:
    """
    Validates, stores and broadcasts enforcer notifications.

    Usage:
        pipeline = EventPipeline(settings_store, storage, hub)
        result = await pipeline.process(secret, payload, EventKind.BAN)
    """

    def __init__(
        self,
        settings: SettingsStore,
        storage: ControlPlaneStore,
        hub: BroadcastHub,
    ):
        self.settings = settings
        self.storage = storage
        self.hub = hub

    async def process(
        self,
        secret: Optional[str],
        payload: Dict[str, Any],
        kind: EventKind,
    ) -> PipelineResult:
        stage = Stage.RECEIVED
        try:
            self._check_secret(secret)
            stage = Stage.SECRET_VALIDATED

            notification = Notification.from_dict(payload)
            host = self._resolve_host(notification)
            stage = Stage.HOST_RESOLVED

            ip = validate_ip(notification.ip)
            jail = validate_name(notification.jail, "jail")
            stage = Stage.ADDRESS_VALIDATED

            event = self._build_event(host, notification, ip, jail, kind)
            event = await asyncio.to_thread(self.storage.save_ban_event, event)
            stage = Stage.PERSISTED
        except ControlPlaneError as e:
            e.stage = stage.value
            logger.warning(f"Rejected {kind.value} notification at stage {stage.value}: {e}")
            raise

        delivered = self.hub.publish_event(event)
        logger.info(
            f"Recorded {kind.value} of {event.ip} in jail {event.jail} "
            f"on host {event.server_id}"
        )
        return PipelineResult(event=event, stage=Stage.ACKNOWLEDGED, delivered=delivered)

    def _check_secret(self, secret: Optional[str]) -> None:
        expected = self.settings.callback_secret
        if not secret or not hmac.compare_digest(secret.encode(), expected.encode()):
            raise AuthError("invalid callback secret")

    def _resolve_host(self, notification: Notification) -> ManagedHost:
        """
        Match the notification to a managed host.

        An explicit server id must match; the hostname is only consulted when
        no id was sent.
        """
        if notification.server_id:
            host = self.settings.get_host(notification.server_id)
            if host is None:
                raise NotFoundError(
                    f"unknown server id {notification.server_id}",
                    kind="server",
                    name=notification.server_id,
                )
            return host

        host = self.settings.host_by_hostname(notification.hostname)
        if host is None:
            raise NotFoundError(
                f"no managed server matches hostname '{notification.hostname}'",
                kind="server",
                name=notification.hostname,
            )
        return host

    def _build_event(
        self,
        host: ManagedHost,
        notification: Notification,
        ip: str,
        jail: str,
        kind: EventKind,
    ) -> BanEvent:
        failures = 0
        logs = ""
        if kind == EventKind.BAN:
            failures = parse_failures(notification.failures)
            logs = trim_log_lines(notification.logs, self.settings.max_log_lines)
        return BanEvent(
            server_id=host.id,
            server_name=host.name,
            ip=ip,
            jail=jail,
            kind=kind,
            hostname=notification.hostname or host.hostname,
            failures=failures,
            log_excerpt=logs,
            received_at=utcnow(),
        )
