"""
网关配置单元测试：默认值、逐字段回退、时长与列表解析、快照不可变。
"""
from __future__ import annotations

import dataclasses
import os

import pytest

from tunnelforge_gateway import config as gateway_config
from tunnelforge_gateway.config import load_config, parse_bool, parse_duration, parse_int, parse_list


def test_defaults_from_empty_environment():
    cfg = load_config({"HOME": "/home/tf"})
    assert cfg.host == "localhost"
    assert cfg.port == 3001
    assert cfg.backend_url == "http://localhost:4021"
    assert cfg.allowed_origins == ("*",)
    assert cfg.proxy_timeout == 30.0
    assert cfg.shutdown_grace_period == 10.0
    assert cfg.max_sessions == 50
    assert cfg.session_timeout == 1440
    assert cfg.enable_auth is False
    assert cfg.auth_required is False
    assert cfg.allow_local_bypass is True
    assert cfg.enable_rate_limit is True
    assert cfg.rate_limit_per_min == 100
    assert cfg.enable_csrf is False
    assert cfg.enable_ip_whitelist is False
    assert cfg.allowed_ips == ("127.0.0.1/8", "::1/128")
    assert cfg.enable_persistence is True
    assert cfg.persistence_interval == 30.0
    assert cfg.static_dir == "./public"
    assert cfg.filesystem_base_path == "/home/tf"
    assert cfg.persistence_dir == os.path.join("/home/tf", ".tunnelforge", "sessions")
    assert cfg.vapid_key_path == os.path.join("/home/tf", ".tunnelforge", "keys")


def test_invalid_int_falls_back_alone():
    cfg = load_config({"RATE_LIMIT_PER_MIN": "notanumber", "MAX_SESSIONS": "7"})
    assert cfg.rate_limit_per_min == 100
    assert cfg.max_sessions == 7


@pytest.mark.parametrize("raw", ["0", "70000", "-1", "80a", "3.5"])
def test_port_out_of_range_or_garbage(raw):
    assert load_config({"PORT": raw}).port == 3001


def test_non_positive_counts_use_default():
    cfg = load_config({"SESSION_TIMEOUT": "0", "RATE_LIMIT_PER_MIN": "-5"})
    assert cfg.session_timeout == 1440
    assert cfg.rate_limit_per_min == 100


def test_bool_values():
    cfg = load_config({"ENABLE_AUTH": "T", "ENABLE_RATE_LIMIT": "False", "ENABLE_CSRF": "yes"})
    assert cfg.enable_auth is True
    assert cfg.enable_rate_limit is False
    assert cfg.enable_csrf is False  # "yes" 不合法，回退默认


def test_durations():
    cfg = load_config({"PROXY_TIMEOUT": "500ms", "SHUTDOWN_GRACE_PERIOD": "2m30s", "PERSISTENCE_INTERVAL": "1s"})
    assert cfg.proxy_timeout == pytest.approx(0.5)
    assert cfg.shutdown_grace_period == pytest.approx(150.0)
    assert cfg.persistence_interval == pytest.approx(1.0)


def test_bad_durations_fall_back():
    cfg = load_config({"PROXY_TIMEOUT": "30", "SHUTDOWN_GRACE_PERIOD": "-1s", "PERSISTENCE_INTERVAL": "0"})
    assert cfg.proxy_timeout == 30.0
    assert cfg.shutdown_grace_period == 10.0
    assert cfg.persistence_interval == 30.0


def test_lists_and_backend_url():
    cfg = load_config({
        "ALLOWED_ORIGINS": " https://a.example , ,https://b.example",
        "ALLOWED_IPS": ", ,",
        "BACKEND_URL": "http://backend:4021/",
    })
    assert cfg.allowed_origins == ("https://a.example", "https://b.example")
    assert cfg.allowed_ips == ("127.0.0.1/8", "::1/128")
    assert cfg.backend_url == "http://backend:4021"


def test_tunnel_providers():
    cfg = load_config({
        "HOME": "/home/tf",
        "ENABLE_CLOUDFLARE_TUNNELS": "true",
        "CLOUDFLARE_API_TOKEN": "tok",
        "CLOUDFLARE_ACCOUNT_ID": "acct",
        "ENABLE_NGROK_TUNNELS": "1",
    })
    status = cfg.tunnel_status()
    assert status["cloudflare"] == {"enabled": True, "configured": True}
    assert status["ngrok"] == {"enabled": True, "configured": False}
    assert status["tailscale"] == {"enabled": False, "configured": False}
    assert cfg.tunnel("tailscale").config_dir == os.path.join("/home/tf", ".tunnelforge", "tailscale")
    assert cfg.tunnel("unknown") is None


def test_snapshot_is_immutable():
    cfg = load_config({})
    with pytest.raises(dataclasses.FrozenInstanceError):
        cfg.port = 1


def test_reads_process_environment_once(monkeypatch):
    monkeypatch.setenv("PORT", "4100")
    cfg = load_config()
    monkeypatch.setenv("PORT", "4200")
    assert cfg.port == 4100


def test_invalid_values_logged_at_debug(caplog):
    with caplog.at_level("DEBUG", logger=gateway_config.logger.name):
        load_config({"PORT": "abc"})
    assert any("PORT" in r.getMessage() and r.levelname == "DEBUG" for r in caplog.records)


def test_parsers():
    assert parse_bool("t") is True and parse_bool("0") is False and parse_bool("on") is None
    assert parse_int("+42") == 42 and parse_int("4 2") is None
    assert parse_duration("1h") == 3600.0
    assert parse_duration("1.5s") == pytest.approx(1.5)
    assert parse_duration("10") is None
    assert parse_duration("") is None
    assert parse_list("a, b,,c") == ("a", "b", "c")


@pytest.mark.parametrize("raw", ["99999999999999h", "169h", "1" * 400 + "s"])
def test_durations_beyond_cap_fall_back(raw):
    cfg = load_config({"PROXY_TIMEOUT": raw, "PERSISTENCE_INTERVAL": raw, "SHUTDOWN_GRACE_PERIOD": raw})
    assert cfg.proxy_timeout == 30.0
    assert cfg.persistence_interval == 30.0
    assert cfg.shutdown_grace_period == 10.0


def test_duration_at_cap_accepted():
    assert load_config({"PROXY_TIMEOUT": "168h"}).proxy_timeout == gateway_config.MAX_DURATION_SEC
