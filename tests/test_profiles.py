"""
Tests for backend profiles loaded from the environment and the active-profile store.
"""
from __future__ import annotations

import pytest

from windchill_mcp.errors import ConfigurationError, UnknownServer
from windchill_mcp.profiles import ServerProfile, ServerProfileStore


class TestFromEnv:
    def test_numbered_profiles(self, gateway_env):
        store = ServerProfileStore.from_env(gateway_env, {"api_path": "/servlet/odata", "timeout": 12})

        assert store.ids() == [1, 2]
        assert store.active_id == 1
        second = store.get(2)
        assert second.name == "Test"
        assert second.api_url == "http://wc2.example/servlet/odata"
        assert second.timeout == 12.0

    def test_incomplete_set_is_skipped(self):
        env = {
            "WINDCHILL_URL_1": "http://a",
            "WINDCHILL_USER_1": "u",
            "WINDCHILL_URL_3": "http://c",
            "WINDCHILL_USER_3": "u",
            "WINDCHILL_PASSWORD_3": "p",
        }
        store = ServerProfileStore.from_env(env)

        assert store.ids() == [3]
        assert store.active.name == "Windchill Server 3"

    def test_legacy_single_set(self):
        env = {"WINDCHILL_URL": "http://legacy", "WINDCHILL_USER": "u", "WINDCHILL_PASSWORD": "p"}
        store = ServerProfileStore.from_env(env)

        assert store.ids() == [1]
        assert store.active.name == "Windchill Server"
        assert store.active.base_url == "http://legacy"

    def test_no_profile_is_a_startup_error(self):
        with pytest.raises(ConfigurationError):
            ServerProfileStore.from_env({})

    def test_active_server_from_env(self, gateway_env):
        gateway_env["WINDCHILL_ACTIVE_SERVER"] = "2"
        assert ServerProfileStore.from_env(gateway_env).active_id == 2

    def test_unknown_active_server_falls_back_to_lowest(self, gateway_env):
        gateway_env["WINDCHILL_ACTIVE_SERVER"] = "9"
        assert ServerProfileStore.from_env(gateway_env).active_id == 1


class TestStore:
    def test_switch_notifies_listeners(self, store):
        seen = []
        store.add_switch_listener(lambda prev, cur: seen.append((prev.id, cur.id)))

        target = store.switch(2)

        assert target.id == 2
        assert store.active_id == 2
        assert seen == [(1, 2)]

    def test_switch_accepts_integral_float(self, store):
        assert store.switch(2.0).id == 2

    def test_switch_unknown_keeps_active_profile(self, store):
        seen = []
        store.add_switch_listener(lambda prev, cur: seen.append(cur.id))

        with pytest.raises(UnknownServer) as exc_info:
            store.switch(7)

        assert store.active_id == 1
        assert seen == []
        assert exc_info.value.status == 404
        assert exc_info.value.available == [1, 2]
        assert "1, 2" in exc_info.value.message

    def test_switch_rejects_bool(self, store):
        with pytest.raises(UnknownServer):
            store.switch(True)

    def test_duplicate_ids_rejected(self, profiles):
        with pytest.raises(ConfigurationError):
            ServerProfileStore([profiles[0], profiles[0]])

    def test_password_never_exposed(self, profiles):
        profile: ServerProfile = profiles[0]
        assert "password" not in profile.public_dict()
        assert "secret-one" not in repr(profile)
