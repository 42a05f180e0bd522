"""
Tests for callback ingestion.
"""

from unittest.mock import MagicMock, patch

import pytest

from f2bctl.core.exceptions import AuthError, NotFoundError, PersistenceError, ValidationError
from f2bctl.core.models import EventKind
from f2bctl.events import EventPipeline, Stage
from f2bctl.events.pipeline import Notification, parse_failures, trim_log_lines

from conftest import CALLBACK_SECRET, make_host


@pytest.fixture
def hub():
    hub = MagicMock()
    hub.publish_event.return_value = True
    return hub


@pytest.fixture
def pipeline(settings_store, store, hub):
    settings_store.upsert_host(make_host("srv-web", hostname="web-01"))
    return EventPipeline(settings_store, store, hub)


def ban_payload(**overrides):
    payload = {
        "serverId": "srv-web",
        "ip": "203.0.113.9",
        "jail": "sshd",
        "hostname": "web-01",
        "failures": "5",
        "logs": "Failed password from 203.0.113.9\n\nFailed password from 203.0.113.9\n",
    }
    payload.update(overrides)
    return payload


# =============================================================================
# Accepted Notifications
# =============================================================================


class TestAccepted:
    @pytest.mark.asyncio
    async def test_ban_is_stored_and_broadcast(self, pipeline, store, hub):
        result = await pipeline.process(CALLBACK_SECRET, ban_payload(), EventKind.BAN)

        assert result.stage == Stage.ACKNOWLEDGED
        assert result.delivered is True
        assert result.event.id is not None
        assert result.event.server_name == "Host srv-web"
        assert result.event.failures == 5
        assert result.event.log_excerpt.count("\n") == 1

        stored = store.list_ban_events()
        assert [e.ip for e in stored] == ["203.0.113.9"]
        hub.publish_event.assert_called_once_with(result.event)

    @pytest.mark.asyncio
    async def test_host_matched_by_hostname(self, pipeline):
        result = await pipeline.process(
            CALLBACK_SECRET, ban_payload(serverId="", hostname="WEB-01"), EventKind.BAN
        )
        assert result.event.server_id == "srv-web"

    @pytest.mark.asyncio
    async def test_unban_drops_failures_and_logs(self, pipeline):
        result = await pipeline.process(CALLBACK_SECRET, ban_payload(), EventKind.UNBAN)
        assert result.event.kind == EventKind.UNBAN
        assert result.event.failures == 0
        assert result.event.log_excerpt == ""

    @pytest.mark.asyncio
    async def test_disabled_host_still_accepted(self, pipeline, settings_store):
        settings_store.upsert_host(make_host("srv-web", hostname="web-01", enabled=False))
        result = await pipeline.process(CALLBACK_SECRET, ban_payload(), EventKind.BAN)
        assert result.event.server_id == "srv-web"

    @pytest.mark.asyncio
    async def test_full_broadcast_queue_still_acknowledged(self, pipeline, hub, store):
        hub.publish_event.return_value = False
        result = await pipeline.process(CALLBACK_SECRET, ban_payload(), EventKind.BAN)
        assert result.delivered is False
        assert len(store.list_ban_events()) == 1


# =============================================================================
# Rejected Notifications
# =============================================================================


class TestRejected:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("secret", [None, "", "wrong-secret-value-0123456789"])
    async def test_bad_secret(self, pipeline, store, hub, secret):
        with pytest.raises(AuthError) as exc_info:
            await pipeline.process(secret, ban_payload(), EventKind.BAN)
        assert exc_info.value.stage == "received"
        assert store.list_ban_events() == []
        hub.publish_event.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_server_id(self, pipeline):
        with pytest.raises(NotFoundError) as exc_info:
            await pipeline.process(CALLBACK_SECRET, ban_payload(serverId="srv-other"), EventKind.BAN)
        assert exc_info.value.stage == "secret_validated"

    @pytest.mark.asyncio
    async def test_unknown_server_id_wins_over_hostname(self, pipeline):
        with pytest.raises(NotFoundError):
            await pipeline.process(
                CALLBACK_SECRET, ban_payload(serverId="srv-other", hostname="web-01"), EventKind.BAN
            )

    @pytest.mark.asyncio
    async def test_unmatched_hostname(self, pipeline):
        with pytest.raises(NotFoundError):
            await pipeline.process(
                CALLBACK_SECRET, ban_payload(serverId="", hostname="db-01"), EventKind.BAN
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [{"ip": "999.1.1.1"}, {"ip": "203.0.113.0/24"}, {"ip": ""}, {"jail": "ssh d"}, {"jail": ""}],
    )
    async def test_invalid_address_or_jail(self, pipeline, store, hub, overrides):
        with pytest.raises(ValidationError) as exc_info:
            await pipeline.process(CALLBACK_SECRET, ban_payload(**overrides), EventKind.BAN)
        assert exc_info.value.stage == "host_resolved"
        assert store.list_ban_events() == []
        hub.publish_event.assert_not_called()

    @pytest.mark.asyncio
    async def test_persistence_failure_is_not_broadcast(self, pipeline, store, hub):
        with patch.object(store, "save_ban_event", side_effect=PersistenceError("disk full")):
            with pytest.raises(PersistenceError) as exc_info:
                await pipeline.process(CALLBACK_SECRET, ban_payload(), EventKind.BAN)
        assert exc_info.value.stage == "address_validated"
        hub.publish_event.assert_not_called()


# =============================================================================
# Helpers
# =============================================================================


class TestHelpers:
    def test_notification_accepts_both_id_keys(self):
        assert Notification.from_dict({"serverId": " a "}).server_id == "a"
        assert Notification.from_dict({"server_id": "b"}).server_id == "b"

    @pytest.mark.parametrize("value, expected", [("7", 7), (" 3 ", 3), ("", 0), ("many", 0), ("-2", 0)])
    def test_parse_failures(self, value, expected):
        assert parse_failures(value) == expected

    def test_trim_keeps_last_non_empty_lines(self):
        logs = "one\n\ntwo\n   \nthree\nfour\n"
        assert trim_log_lines(logs, 2) == "three\nfour"
        assert trim_log_lines(logs, 0) == "one\ntwo\nthree\nfour"
