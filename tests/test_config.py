from tourcall.config import DEFAULT_ICE_SERVERS, AppConfig, CallConfig


def test_call_config_defaults(monkeypatch):
    for name in ("TOURCALL_RING_TIMEOUT_SEC", "TOURCALL_TICK_INTERVAL_SEC", "TOURCALL_ICE_SERVERS"):
        monkeypatch.delenv(name, raising=False)

    cfg = CallConfig.from_env()

    assert cfg.ring_timeout_sec == 30.0
    assert cfg.tick_interval_sec == 1.0
    assert cfg.ice_servers == DEFAULT_ICE_SERVERS
    assert cfg.default_caller_name == "Caller"


def test_call_config_env_overrides(monkeypatch):
    monkeypatch.setenv("TOURCALL_RING_TIMEOUT_SEC", "12.5")
    monkeypatch.setenv("TOURCALL_TICK_INTERVAL_SEC", "oops")
    monkeypatch.setenv("TOURCALL_ICE_SERVERS", "stun:a.example:3478, ,stun:b.example:3478")

    cfg = CallConfig.from_env()

    assert cfg.ring_timeout_sec == 12.5
    assert cfg.tick_interval_sec == 1.0
    assert cfg.ice_servers == ("stun:a.example:3478", "stun:b.example:3478")


def test_app_config_from_env(monkeypatch):
    monkeypatch.setenv("TOURCALL_SERVER_URL", "ws://relay.example:9000/ws")
    monkeypatch.setenv("TOURCALL_ROOM", "tour-77")
    monkeypatch.setenv("TOURCALL_USER_ID", "op-1")
    monkeypatch.setenv("TOURCALL_NAME", "Operator")

    cfg = AppConfig.from_env()

    assert cfg.server_url == "ws://relay.example:9000/ws"
    assert cfg.room == "tour-77"
    assert cfg.user_id == "op-1"
    assert cfg.name == "Operator"
    assert cfg.target_id is None
    assert isinstance(cfg.call, CallConfig)
