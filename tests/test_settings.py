"""Tests for settings persistence."""

import json

import pytest

from mailsync.core import settings as settings_mod
from mailsync.core.settings import Settings, add_account, load_settings, remove_account, save_settings


def test_missing_file_gives_defaults(tmp_path):
    settings = load_settings(tmp_path / "settings.json")
    assert settings == Settings()


def test_unreadable_file_gives_defaults(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text("{broken")
    assert load_settings(path) == Settings()


def test_round_trip(tmp_path):
    path = tmp_path / "nested" / "settings.json"
    settings = Settings()
    add_account(settings, "a@example.com")
    add_account(settings, "b@example.com", "outlook")
    save_settings(settings, path)

    loaded = load_settings(path)
    assert loaded.accounts == ["a@example.com", "b@example.com"]
    assert loaded.provider_for("b@example.com") == "outlook"
    assert loaded.provider_for("a@example.com") == "google"
    assert json.loads(path.read_text())["accounts"] == ["a@example.com", "b@example.com"]
    assert not path.with_name("settings.json.tmp").exists()


def test_add_and_remove_account():
    settings = Settings()
    assert add_account(settings, " a@example.com ") is True
    assert add_account(settings, "a@example.com") is False
    assert settings.accounts == ["a@example.com"]
    assert remove_account(settings, "a@example.com") is True
    assert remove_account(settings, "a@example.com") is False
    assert settings.accounts == []
    assert settings.providers == {}


def test_add_account_rejects_unknown_provider():
    with pytest.raises(KeyError):
        add_account(Settings(), "a@example.com", "aol")


def test_default_path_follows_data_dir(tmp_path, monkeypatch):
    monkeypatch.setattr("mailsync.config.DATA_DIR", tmp_path)
    assert settings_mod.default_settings_path() == tmp_path / "settings.json"
