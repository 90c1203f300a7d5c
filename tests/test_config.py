import json

from chatstream.shared.config.chat import ChatConfig, load_chat_config, load_env_credentials


def _write(tmp_path, payload):
    path = tmp_path / "chat.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_bundled_config_matches_defaults(monkeypatch):
    monkeypatch.delenv("CHATSTREAM_CONFIG", raising=False)

    assert load_chat_config() == ChatConfig()


def test_missing_file_gives_defaults(tmp_path):
    assert load_chat_config(tmp_path / "nope.json") == ChatConfig()


def test_unreadable_json_gives_defaults(tmp_path):
    path = tmp_path / "chat.json"
    path.write_text("{not json", encoding="utf-8")

    assert load_chat_config(path) == ChatConfig()


def test_file_values_override_defaults(tmp_path):
    path = _write(
        tmp_path,
        {
            "irc": {"reconnect_interval": 2, "max_auth_failures": 5},
            "history": {"enabled": False, "window_seconds": 600},
            "event_log": {"capacity": 50},
            "emotes": {"providers": ["ffz"]},
        },
    )

    config = load_chat_config(path)

    assert config.irc.reconnect_interval == 2
    assert config.irc.max_auth_failures == 5
    assert config.irc.host == "irc.chat.twitch.tv"
    assert config.history.enabled is False
    assert config.history.window_seconds == 600
    assert config.event_log.capacity == 50
    assert config.emotes.providers == ["ffz"]


def test_invalid_values_fall_back_per_key(tmp_path):
    path = _write(
        tmp_path,
        {
            "irc": {"port": 70000, "reconnect_multiplier": 3},
            "event_log": {"capacity": 0},
            "emotes": "everything",
            "unknown": {"ignored": True},
        },
    )

    config = load_chat_config(path)

    assert config.irc.port == 6697
    assert config.irc.reconnect_multiplier == 3
    assert config.event_log.capacity == 1000
    assert config.emotes.providers == ["bttv", "ffz"]


def test_max_interval_is_clamped_to_base_interval(tmp_path):
    path = _write(tmp_path, {"irc": {"reconnect_interval": 10, "max_reconnect_interval": 2}})

    config = load_chat_config(path)

    assert config.irc.max_reconnect_interval == 10


def test_environment_selects_config_file(tmp_path, monkeypatch):
    path = _write(tmp_path, {"eventsub": {"reconnect_delay": 0}})
    monkeypatch.setenv("CHATSTREAM_CONFIG", str(path))

    assert load_chat_config().eventsub.reconnect_delay == 0


def test_env_credentials(monkeypatch):
    monkeypatch.setenv("TWITCH_OAUTH_TOKEN", " oauth:abc123 ")
    monkeypatch.setenv("TWITCH_CLIENT_ID", "cid")
    monkeypatch.setenv("TWITCH_CHANNEL", "#SomeChannel")
    monkeypatch.delenv("TWITCH_BOT_NICK", raising=False)

    creds = load_env_credentials()

    assert creds.token == "abc123"
    assert creds.client_id == "cid"
    assert creds.channel == "somechannel"
    assert creds.nickname == ""
    assert creds.authenticated is True
    assert load_env_credentials("Other").channel == "other"


def test_env_credentials_without_token(monkeypatch):
    for key in ("TWITCH_OAUTH_TOKEN", "TWITCH_CLIENT_ID", "TWITCH_CHANNEL", "TWITCH_BOT_NICK"):
        monkeypatch.delenv(key, raising=False)

    creds = load_env_credentials()

    assert creds.authenticated is False
    assert creds.channel == ""
