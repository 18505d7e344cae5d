import pytest

from config import ConfigError, load_settings

BASE_ENV = {
    "TELEGRAM_BOT_TOKEN": "123:abc",
    "PRIVATE_CHAT_ID": "-1001742085729",
    "BALANCE_CONTRACT_ADDRESS": "secret1s09x2xvfd2lp2skgzm29w2xtena7s8fq98v852",
    "BALANCE_CONTRACT_CODE_HASH": "5a085bd8ed89de92b35134ddd12505a602c7759ea25fb5c089ba03c8535b3042",
    "DATA_DIR": "/tmp/amber",
}


def test_defaults():
    settings = load_settings(BASE_ENV)
    assert settings.private_chat_id == -1001742085729
    assert settings.min_balance == 1_000_000
    assert settings.chain_id == "secret-4"
    assert settings.membership_contract == BASE_ENV["BALANCE_CONTRACT_ADDRESS"]
    assert settings.membership_code_hash == BASE_ENV["BALANCE_CONTRACT_CODE_HASH"]
    assert settings.admin_user_ids == frozenset()
    assert settings.sqlite_path == "/tmp/amber/members.db"
    assert settings.database_url is None


def test_overrides():
    env = dict(BASE_ENV, MIN_BALANCE="1", ADMIN_USER_ID="42, 43", LCD_URL="https://lcd.example/",
               MEMBERSHIP_CONTRACT_ADDRESS="secret1other", CHAIN_TIMEOUT="2.5")
    settings = load_settings(env)
    assert settings.min_balance == 1
    assert settings.admin_user_ids == frozenset({42, 43})
    assert settings.lcd_url == "https://lcd.example"
    assert settings.membership_contract == "secret1other"
    assert settings.chain_timeout == 2.5


def test_missing_required_lists_all():
    env = dict(BASE_ENV)
    del env["TELEGRAM_BOT_TOKEN"]
    env["PRIVATE_CHAT_ID"] = "  "
    with pytest.raises(ConfigError) as excinfo:
        load_settings(env)
    assert "TELEGRAM_BOT_TOKEN" in str(excinfo.value)
    assert "PRIVATE_CHAT_ID" in str(excinfo.value)


@pytest.mark.parametrize("name,value", [
    ("MIN_BALANCE", "lots"),
    ("MIN_BALANCE", "-5"),
    ("PRIVATE_CHAT_ID", "group"),
    ("CHAIN_TIMEOUT", "soon"),
])
def test_bad_numbers(name, value):
    with pytest.raises(ConfigError):
        load_settings(dict(BASE_ENV, **{name: value}))


def test_reads_process_environment(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for key, value in BASE_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setenv("MIN_BALANCE", "5")
    assert load_settings().min_balance == 5
