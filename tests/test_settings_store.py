"""
Tests for the settings store and host registry.
"""

from datetime import datetime, timedelta, timezone

import pytest

from f2bctl.core.exceptions import ConfigurationError, NotFoundError, ValidationError
from f2bctl.core.models import ManagedHost, TransportKind
from f2bctl.settings import AppSettings, SettingsStore, generate_callback_secret, normalize_hosts
from f2bctl.settings.models import GENERATED_SECRET_LENGTH
from f2bctl.settings.store import LOCAL_HOST_ID, MASKED_SECRET, generate_host_id

from conftest import CALLBACK_SECRET, make_host


# =============================================================================
# Normalization
# =============================================================================


class TestNormalizeHosts:
    def test_empty_registry_gets_disabled_local_host(self):
        now = datetime.now(timezone.utc)
        hosts = normalize_hosts([], now, hostname="box")
        assert len(hosts) == 1
        assert hosts[0].id == LOCAL_HOST_ID
        assert hosts[0].transport == TransportKind.LOCAL
        assert hosts[0].enabled is False
        assert hosts[0].hostname == "box"

    def test_first_enabled_host_becomes_default(self):
        now = datetime.now(timezone.utc)
        hosts = normalize_hosts(
            [
                ManagedHost(id="a", enabled=False, created_at=now),
                ManagedHost(id="b", transport=TransportKind.SSH, enabled=True, created_at=now + timedelta(seconds=1)),
            ],
            now,
        )
        assert [h.is_default for h in hosts] == [False, True]

    def test_single_default(self):
        now = datetime.now(timezone.utc)
        hosts = normalize_hosts(
            [
                ManagedHost(id="a", enabled=True, is_default=True, created_at=now),
                ManagedHost(id="b", enabled=True, is_default=True, created_at=now + timedelta(seconds=1)),
            ],
            now,
        )
        assert [h.is_default for h in hosts] == [True, False]

    def test_disabled_host_clears_flags(self):
        now = datetime.now(timezone.utc)
        host = ManagedHost(id="a", enabled=False, is_default=True, restart_needed=True)
        normalized = normalize_hosts([host], now)[0]
        assert normalized.is_default is False
        assert normalized.restart_needed is False
        assert normalized.name
        assert normalized.socket_path

    def test_missing_id_is_generated(self):
        hosts = normalize_hosts([ManagedHost(transport=TransportKind.SSH)], datetime.now(timezone.utc))
        assert hosts[0].id.startswith("srv-")
        assert hosts[0].enabled is True


def test_generated_ids_and_secrets():
    assert len(generate_host_id()) == len("srv-") + 16
    assert len(generate_callback_secret()) == GENERATED_SECRET_LENGTH
    assert generate_callback_secret() != generate_callback_secret()


# =============================================================================
# Loading
# =============================================================================


class TestLoad:
    def test_generates_secret_and_callback(self, store):
        settings = SettingsStore(store, hostname="box")
        loaded = settings.load()
        assert len(loaded.callback_secret) == GENERATED_SECRET_LENGTH
        assert loaded.callback_url == "http://127.0.0.1:8080"

    def test_secret_survives_reload(self, store):
        first = SettingsStore(store, hostname="box").load()
        second = SettingsStore(store, hostname="box").load()
        assert first.callback_secret == second.callback_secret

    def test_short_configured_secret_is_fatal(self, store):
        with pytest.raises(ConfigurationError):
            SettingsStore(store, callback_secret="short").load()

    def test_configured_callback_url(self, store):
        settings = SettingsStore(store, callback_url="https://cp.example/", callback_secret=CALLBACK_SECRET)
        assert settings.load().callback_url == "https://cp.example"

    def test_unloaded_store(self, store):
        with pytest.raises(ConfigurationError):
            SettingsStore(store).get()


# =============================================================================
# Settings Updates
# =============================================================================


class TestUpdate:
    def test_short_secret_rejected_and_state_kept(self, settings_store):
        candidate = settings_store.get()
        candidate.callback_secret = "x" * 19
        with pytest.raises(ValidationError):
            settings_store.update(candidate)
        assert settings_store.callback_secret == CALLBACK_SECRET

    def test_secret_of_minimum_length_accepted(self, settings_store):
        candidate = settings_store.get()
        candidate.callback_secret = "x" * 20
        assert settings_store.update(candidate).callback_secret == "x" * 20

    def test_jail_default_change_marks_hosts(self, settings_store):
        settings_store.upsert_host(make_host("a"))
        candidate = settings_store.get()
        candidate.bantime = "1d"
        updated = settings_store.update(candidate)
        assert updated.restart_needed is True
        assert settings_store.get_host("a").restart_needed is True

    def test_unrelated_change_does_not_mark_hosts(self, settings_store):
        settings_store.upsert_host(make_host("a"))
        candidate = settings_store.get()
        candidate.console_output = True
        assert settings_store.update(candidate).restart_needed is False

    def test_port_change_moves_loopback_callback(self, settings_store):
        candidate = settings_store.get()
        candidate.port = 9090
        assert settings_store.update(candidate).callback_url == "http://127.0.0.1:9090"

    def test_listeners_receive_new_settings(self, settings_store):
        seen = []
        settings_store.add_listener(seen.append)
        candidate = settings_store.get()
        candidate.console_output = True
        settings_store.update(candidate)
        assert seen and seen[0].console_output is True

    @pytest.mark.parametrize(
        "secret",
        [
            "abcdefghijklmnopqrst\" ; touch /tmp/x ; \"",
            "abcdefghijklmnopqrst$(id)",
            "abcdefghijklmnopqrst\nactionban = rm",
        ],
    )
    def test_secret_with_shell_characters_rejected(self, settings_store, secret):
        candidate = settings_store.get()
        candidate.callback_secret = secret
        with pytest.raises(ValidationError):
            settings_store.update(candidate)
        assert settings_store.callback_secret == CALLBACK_SECRET

    @pytest.mark.parametrize(
        "url",
        ["http://cp.example;reboot", "http://cp.example/$(id)", "ftp://cp.example", "http://cp example"],
    )
    def test_unsafe_callback_url_rejected(self, settings_store, url):
        candidate = settings_store.get()
        candidate.callback_url = url
        with pytest.raises(ValidationError):
            settings_store.update(candidate)

    def test_callback_url_with_path_accepted(self, settings_store):
        candidate = settings_store.get()
        candidate.callback_url = "https://cp.example:8443/f2b/"
        assert settings_store.update(candidate).callback_url == "https://cp.example:8443/f2b"

    @pytest.mark.parametrize(
        "field, value",
        [
            ("bantime", "1h\naction = evil"),
            ("chain", "INPUT; rm -rf /"),
            ("banaction", "%(evil)s"),
            ("ignore_ips", ["10.0.0.0/8 $(id)"]),
        ],
    )
    def test_unsafe_jail_defaults_rejected(self, settings_store, field, value):
        candidate = settings_store.get()
        setattr(candidate, field, value)
        with pytest.raises(ValidationError) as exc_info:
            settings_store.update(candidate)
        assert exc_info.value.field == field

    def test_unsafe_configured_callback_url_is_fatal(self, store):
        settings = SettingsStore(store, callback_url="http://cp/`id`", callback_secret=CALLBACK_SECRET)
        with pytest.raises(ConfigurationError):
            settings.load()

    def test_hosts_untouched_by_update(self, settings_store):
        settings_store.upsert_host(make_host("a"))
        candidate = settings_store.get()
        candidate.servers = []
        settings_store.update(candidate)
        assert settings_store.get_host("a") is not None


# =============================================================================
# Host Registry
# =============================================================================


class TestHosts:
    def test_upsert_creates_and_persists(self, store, settings_store):
        created = settings_store.upsert_host(make_host("", name="edge"))
        assert created.id.startswith("srv-")
        assert created.created_at is not None

        reloaded = SettingsStore(store, callback_secret=CALLBACK_SECRET, hostname="control")
        reloaded.load()
        assert reloaded.get_host(created.id).name == "edge"

    def test_upsert_keeps_secret_when_masked(self, settings_store):
        settings_store.upsert_host(make_host("a", agent_secret="real-secret"))
        settings_store.upsert_host(make_host("a", agent_secret=MASKED_SECRET, name="renamed"))
        host = settings_store.get_host("a")
        assert host.agent_secret == "real-secret"
        assert host.name == "renamed"

    def test_upsert_keeps_enabled_when_omitted(self, settings_store):
        settings_store.upsert_host(make_host("a", enabled=False))
        settings_store.upsert_host(make_host("a", enabled=None))
        assert settings_store.get_host("a").enabled is False

    def test_ssh_host_requires_user(self, settings_store):
        with pytest.raises(ValidationError) as exc_info:
            settings_store.upsert_host(make_host("a", transport=TransportKind.SSH, host="10.0.0.1"))
        assert exc_info.value.field == "ssh_user"

    @pytest.mark.parametrize("host_id", ["x' ; touch /tmp/pwned ; echo '", "a b", "srv/1", "$(id)"])
    def test_unsafe_host_id_rejected(self, settings_store, host_id):
        with pytest.raises(ValidationError) as exc_info:
            settings_store.upsert_host(make_host(host_id))
        assert exc_info.value.field == "id"
        assert settings_store.get_host(host_id) is None

    def test_agent_url_scheme(self, settings_store):
        with pytest.raises(ValidationError):
            settings_store.upsert_host(make_host("a", agent_url="ftp://agent"))

    def test_disabling_default_promotes_next(self, settings_store):
        settings_store.upsert_host(make_host("a", is_default=True))
        settings_store.upsert_host(make_host("b"))
        assert settings_store.default_host().id == "a"

        settings_store.upsert_host(make_host("a", enabled=False))
        assert settings_store.default_host().id == "b"
        assert settings_store.get_host("a").is_default is False

    def test_exactly_one_default(self, settings_store):
        settings_store.upsert_host(make_host("a"))
        settings_store.upsert_host(make_host("b", is_default=True))
        defaults = [h.id for h in settings_store.list_hosts() if h.is_default]
        assert defaults == ["b"]

    def test_set_default_enables_host(self, settings_store):
        settings_store.set_default_host(LOCAL_HOST_ID)
        host = settings_store.default_host()
        assert host.id == LOCAL_HOST_ID
        assert host.enabled is True

    def test_set_default_unknown(self, settings_store):
        with pytest.raises(NotFoundError):
            settings_store.set_default_host("srv-missing")

    def test_delete(self, settings_store):
        settings_store.upsert_host(make_host("a"))
        settings_store.delete_host("a")
        assert settings_store.get_host("a") is None
        with pytest.raises(NotFoundError):
            settings_store.delete_host("a")

    def test_host_by_hostname_is_case_insensitive(self, settings_store):
        settings_store.upsert_host(make_host("a", hostname="Web-01.example"))
        assert settings_store.host_by_hostname("web-01.EXAMPLE").id == "a"
        assert settings_store.host_by_hostname("") is None

    def test_restart_flags(self, settings_store):
        settings_store.upsert_host(make_host("a"))
        settings_store.mark_restart_needed("a")
        assert settings_store.get().restart_needed is True
        settings_store.mark_restart_done("a")
        assert settings_store.get().restart_needed is False
        with pytest.raises(NotFoundError):
            settings_store.mark_restart_needed("srv-missing")

    def test_returned_hosts_are_copies(self, settings_store):
        settings_store.upsert_host(make_host("a", tags=["edge"]))
        host = settings_store.get_host("a")
        host.tags.append("mutated")
        host.name = "mutated"
        assert settings_store.get_host("a").tags == ["edge"]
        assert settings_store.get_host("a").name != "mutated"


def test_settings_round_trip_keeps_public_secret_masked():
    settings = AppSettings(
        callback_secret="c" * 32,
        servers=[ManagedHost(id="a", transport=TransportKind.AGENT, agent_secret="token")],
    )
    public = settings.to_dict(public=True)
    assert public["servers"][0]["agent_secret"] == MASKED_SECRET
    assert AppSettings.from_dict(settings.to_dict()).servers[0].agent_secret == "token"
