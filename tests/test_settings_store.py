"""Tests for per-user settings."""

import sqlite3
from unittest.mock import MagicMock

import pytest

from diaryindex.errors import ConfigUnavailable
from diaryindex.settings_store import (
    AI_API_KEY,
    AI_ENABLED,
    AI_EMBEDDING_PROVIDER,
    mask_value,
    parse_setting,
)


def _store_raw(settings_store, user_id, key, value_json):
    """Write a value bypassing type checks, as another writer might."""
    with settings_store._conn:
        settings_store._conn.execute(
            "INSERT OR REPLACE INTO settings (user_id, key, value_json, updated_at) "
            "VALUES (?, ?, ?, '')",
            (user_id, key, value_json),
        )


class TestGet:

    def test_unset_key_not_found(self, settings_store):
        assert settings_store.get("u1", AI_ENABLED) == (None, False)
        assert settings_store.get_bool("u1", AI_ENABLED) == (False, False)
        assert settings_store.get_string("u1", AI_API_KEY) == ("", False)

    def test_set_then_get(self, settings_store):
        settings_store.set("u1", AI_ENABLED, True)
        settings_store.set("u1", AI_API_KEY, "sk-secret")

        assert settings_store.get_bool("u1", AI_ENABLED) == (True, True)
        assert settings_store.get_string("u1", AI_API_KEY) == ("sk-secret", True)

    def test_explicit_false_is_found(self, settings_store):
        settings_store.set("u1", AI_ENABLED, False)
        assert settings_store.get_bool("u1", AI_ENABLED) == (False, True)

    def test_scoped_by_user(self, settings_store):
        settings_store.set("u1", AI_ENABLED, True)
        assert settings_store.get_bool("u2", AI_ENABLED) == (False, False)

    @pytest.mark.parametrize("raw,expected", [
        ("true", True),
        ("false", False),
        ("1", True),
        ("0", False),
        ("2.5", True),
        ('"true"', True),
        ('"yes"', False),
        ('"TRUE"', False),
        ("null", False),
        ("[1]", False),
    ])
    def test_get_bool_coercion(self, settings_store, raw, expected):
        _store_raw(settings_store, "u1", AI_ENABLED, raw)
        assert settings_store.get_bool("u1", AI_ENABLED) == (expected, True)

    def test_corrupt_value_found_but_false(self, settings_store):
        _store_raw(settings_store, "u1", AI_ENABLED, "{not json")
        assert settings_store.get_bool("u1", AI_ENABLED) == (False, True)


class TestSet:

    def test_unknown_key_rejected(self, settings_store):
        with pytest.raises(ValueError, match="Unknown setting"):
            settings_store.set("u1", "ai.temperature", "0.2")

    def test_wrong_type_rejected(self, settings_store):
        with pytest.raises(ValueError, match="expects a bool"):
            settings_store.set("u1", AI_ENABLED, "true")
        with pytest.raises(ValueError, match="expects a string"):
            settings_store.set("u1", AI_API_KEY, 12345)

    def test_overwrite(self, settings_store):
        settings_store.set("u1", AI_ENABLED, True)
        settings_store.set("u1", AI_ENABLED, False)
        assert settings_store.get_bool("u1", AI_ENABLED) == (False, True)

    def test_delete(self, settings_store):
        settings_store.set("u1", AI_ENABLED, True)
        assert settings_store.delete("u1", AI_ENABLED) is True
        assert settings_store.delete("u1", AI_ENABLED) is False
        assert settings_store.get("u1", AI_ENABLED) == (None, False)


class TestBatch:

    def test_defaults_filled_in(self, settings_store):
        values = settings_store.get_batch("u1")
        assert values[AI_ENABLED] is False
        assert values[AI_EMBEDDING_PROVIDER] == "openai"

    def test_sensitive_values_masked(self, settings_store):
        settings_store.set("u1", AI_API_KEY, "sk-1234567890abcdef")

        assert settings_store.get_batch("u1")[AI_API_KEY] == "sk-1***cdef"
        assert settings_store.get_batch("u1", mask=False)[AI_API_KEY] == "sk-1234567890abcdef"


class TestHelpers:

    @pytest.mark.parametrize("value,expected", [
        ("", ""),
        ("short", "***"),
        ("sk-abcdefghijkl", "sk-a***ijkl"),
    ])
    def test_mask_value(self, value, expected):
        assert mask_value(value) == expected

    @pytest.mark.parametrize("raw,expected", [
        ("true", True), ("Yes", True), ("1", True), ("on", True),
        ("false", False), ("NO", False), ("0", False), ("off", False),
    ])
    def test_parse_bool_setting(self, raw, expected):
        assert parse_setting(AI_ENABLED, raw) is expected

    def test_parse_string_setting_unchanged(self):
        assert parse_setting("ai.embedding_model", " text-embedding-3-small ") == " text-embedding-3-small "

    def test_parse_rejects_bad_input(self):
        with pytest.raises(ValueError):
            parse_setting(AI_ENABLED, "maybe")
        with pytest.raises(ValueError):
            parse_setting("no.such.key", "x")


class TestUnavailable:

    def test_read_failure_raises_config_unavailable(self, settings_store):
        real_conn = settings_store._conn
        settings_store._conn = MagicMock()
        settings_store._conn.execute.side_effect = sqlite3.OperationalError("database is locked")
        try:
            with pytest.raises(ConfigUnavailable, match="locked"):
                settings_store.get_bool("u1", AI_ENABLED)
            with pytest.raises(ConfigUnavailable):
                settings_store.set("u1", AI_ENABLED, True)
        finally:
            settings_store._conn = real_conn

    def test_closed_store_raises_config_unavailable(self, settings_store):
        settings_store.close()

        with pytest.raises(ConfigUnavailable, match="closed"):
            settings_store.get_bool("u1", AI_ENABLED)
        with pytest.raises(ConfigUnavailable, match="closed"):
            settings_store.get_batch("u1")
        with pytest.raises(ConfigUnavailable, match="closed"):
            settings_store.set("u1", AI_ENABLED, True)
        with pytest.raises(ConfigUnavailable, match="closed"):
            settings_store.delete("u1", AI_ENABLED)
