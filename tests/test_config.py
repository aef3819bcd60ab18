"""Tests for settings parsing and RTC client configuration."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from signalroom.core.config import Settings
from signalroom.services import rtc as rtc_service


def test_ice_servers_from_comma_separated_urls(monkeypatch):
    monkeypatch.setenv("ICE_SERVERS", "stun:stun.example.org:3478, stun:backup.example.org")

    settings = Settings(_env_file=None)

    assert [server.urls for server in settings.ice_servers] == [
        ["stun:stun.example.org:3478"],
        ["stun:backup.example.org"],
    ]


def test_ice_servers_from_json_with_turn_credentials(monkeypatch):
    monkeypatch.setenv(
        "ICE_SERVERS",
        '[{"urls": "turn:turn.example.org:3478", "username": "u", "credential": "p"}]',
    )

    settings = Settings(_env_file=None)

    (server,) = settings.ice_servers
    assert server.urls == ["turn:turn.example.org:3478"]
    assert (server.username, server.credential) == ("u", "p")


def test_room_creation_mode_is_validated(monkeypatch):
    monkeypatch.setenv("ROOM_CREATION", "sometimes")

    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_client_config_copies_settings(monkeypatch):
    monkeypatch.setenv("RELAY_URL", "wss://relay.example.org/api/signaling/ws")
    settings = Settings(_env_file=None)

    config = rtc_service.build_client_config(settings)

    assert config.relay_url == "wss://relay.example.org/api/signaling/ws"
    assert config.ice_servers == settings.ice_servers
    assert config.ice_servers[0] is not settings.ice_servers[0]
