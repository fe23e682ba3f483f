import pytest

from quickchat.config import DEFAULT_BASE_URL, load_client_config_from_env


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("QUICKCHAT_BASE_URL", "http://chat.local:9000")
    monkeypatch.setenv("QUICKCHAT_HOME", str(tmp_path))
    monkeypatch.setenv("QUICKCHAT_POLL_INTERVAL_S", "0.5")
    monkeypatch.setenv("QUICKCHAT_REALTIME", "0")
    monkeypatch.setenv("QUICKCHAT_ACCOUNT_SECRET", "shared")
    config = load_client_config_from_env()
    assert config.base_url == "http://chat.local:9000"
    assert config.store_path == tmp_path / "store.json"
    assert config.poll_interval_s == 0.5
    assert config.realtime is False
    assert config.account_secret == "shared"


def test_defaults(monkeypatch):
    for name in ("QUICKCHAT_BASE_URL", "QUICKCHAT_POLL_INTERVAL_S", "QUICKCHAT_REALTIME", "QUICKCHAT_HTTP_TIMEOUT_S"):
        monkeypatch.delenv(name, raising=False)
    config = load_client_config_from_env()
    assert config.base_url == DEFAULT_BASE_URL
    assert config.poll_interval_s == 2.0
    assert config.realtime is True


@pytest.mark.parametrize(
    "name,value",
    [("QUICKCHAT_POLL_INTERVAL_S", "0"), ("QUICKCHAT_HTTP_TIMEOUT_S", "fast"), ("QUICKCHAT_REALTIME", "yes")],
)
def test_invalid_values_name_the_variable(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=name):
        load_client_config_from_env()
