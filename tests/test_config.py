"""Tests for settings helpers."""
from lifestream.core.config import Settings, get_socket_transports, get_socket_url, settings


def test_socket_url_derived_from_api_base(monkeypatch):
    monkeypatch.setattr(settings, "socket_url", None)
    monkeypatch.setattr(settings, "api_base_url", "https://lifestream.example/api/")
    assert get_socket_url() == "https://lifestream.example"


def test_explicit_socket_url_wins(monkeypatch):
    monkeypatch.setattr(settings, "socket_url", "wss://chat.lifestream.example")
    assert get_socket_url() == "wss://chat.lifestream.example"


def test_socket_transports_parsed(monkeypatch):
    monkeypatch.setattr(settings, "socket_transports", " websocket , polling,")
    assert get_socket_transports() == ["websocket", "polling"]


def test_debug_parsing_is_tolerant():
    assert Settings(debug="yes").debug is True
    assert Settings(debug="off").debug is False


def test_env_prefix_is_applied(monkeypatch):
    monkeypatch.setenv("LIFESTREAM_SEND_ACK_TIMEOUT", "3")
    assert Settings().send_ack_timeout == 3.0
