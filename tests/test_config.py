from decimal import Decimal

import pytest

import constants
from config import ConfigError, build_config, load_config


def _document(**overrides):
    document = {
        'token-quantity-to-use': '1000',
        'ping-interval-ms': 1500,
        'negative-supply-sell-trigger': '1000',
        'negative-supply-buy-trigger': '500',
        'price-fall-percent-trigger': 10,
        'slippage-percent': 0.5,
        'private-wallet-key': '0x' + '11' * 32,
        'json-rpc-endpoint-url': 'http://mock-rpc',
    }
    document.update(overrides)
    return {key: value for key, value in document.items() if value is not None}


@pytest.fixture(autouse=True)
def clear_env(monkeypatch):
    monkeypatch.delenv(constants.PRIVATE_WALLET_KEY_ENV_VAR, raising=False)
    monkeypatch.delenv(constants.JSON_RPC_ENDPOINT_URL_ENV_VAR, raising=False)


def test_build_config_parses_decimals_exactly():
    config = build_config(_document())
    assert config.token_quantity_to_use == Decimal('1000')
    assert config.comparator_quantity_to_use is None
    assert config.slippage_percent == Decimal('0.5')
    assert isinstance(config.price_fall_percent_trigger, Decimal)
    assert config.ping_interval_seconds == 1.5
    assert config.token_address == constants.SPIRAL_TOKEN_ADDRESS
    assert config.token_decimals == 9


def test_missing_both_quantities_is_fatal():
    with pytest.raises(ConfigError, match="token-quantity-to-use"):
        build_config(_document(**{'token-quantity-to-use': None}))


def test_empty_quantity_strings_count_as_missing():
    with pytest.raises(ConfigError):
        build_config(_document(**{'token-quantity-to-use': '', 'comparator-quantity-to-use': '  '}))


def test_comparator_quantity_is_accepted_alone():
    config = build_config(_document(**{'token-quantity-to-use': None, 'comparator-quantity-to-use': '250.5'}))
    assert config.comparator_quantity_to_use == Decimal('250.5')
    assert config.buys_quantity_with_comparator is True


@pytest.mark.parametrize(
    "key, value",
    [
        ('ping-interval-ms', 0),
        ('price-fall-percent-trigger', '101'),
        ('slippage-percent', '100'),
        ('negative-supply-sell-trigger', 'lots'),
        ('token-quantity-to-use', '-5'),
        ('rpc-rate-limit-per-second', 'fast'),
        ('rpc-rate-limit-per-second', -1),
        ('rpc-timeout-seconds', 'soon'),
        ('rpc-timeout-seconds', 0),
    ],
)
def test_invalid_values_are_rejected(key, value):
    with pytest.raises(ConfigError):
        build_config(_document(**{key: value}))


def test_env_overrides_secrets(monkeypatch):
    monkeypatch.setenv(constants.PRIVATE_WALLET_KEY_ENV_VAR, '0x' + '22' * 32)
    monkeypatch.setenv(constants.JSON_RPC_ENDPOINT_URL_ENV_VAR, 'http://env-rpc')
    config = build_config(_document(**{'private-wallet-key': None}))
    assert config.private_wallet_key == '0x' + '22' * 32
    assert config.json_rpc_endpoint_url == 'http://env-rpc'


def test_missing_wallet_key_is_fatal():
    with pytest.raises(ConfigError, match="PRIVATE_WALLET_KEY"):
        build_config(_document(**{'private-wallet-key': None}))


def test_load_config_reads_yaml_and_cli_flags(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "comparator-quantity-to-use: '500'\n"
        "ping-interval-ms: 2000\n"
        "negative-supply-sell-trigger: '1000'\n"
        "negative-supply-buy-trigger: '500'\n"
        "price-fall-percent-trigger: 10\n"
        "slippage-percent: 1\n"
        "private-wallet-key: '0x" + "11" * 32 + "'\n"
        "json-rpc-endpoint-url: http://mock-rpc\n"
        "journal-db-path: ''\n",
        encoding="utf-8",
    )
    config = load_config(['--config', str(config_path), '--once', '--log-level', 'DEBUG'])
    assert config.comparator_quantity_to_use == Decimal('500')
    assert config.run_once is True
    assert config.log_level == 'DEBUG'
    assert config.journal_db_path is None


def test_load_config_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(['--config', str(tmp_path / "absent.yaml")])


def test_numeric_rpc_settings_accept_yaml_numbers():
    config = build_config(_document(**{'rpc-rate-limit-per-second': 5, 'rpc-timeout-seconds': '12.5'}))
    assert config.rpc_rate_limit_per_second == 5.0
    assert config.rpc_timeout_seconds == 12.5
