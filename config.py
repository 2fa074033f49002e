#!/usr/bin/env python3
import os
import argparse
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Mapping, NamedTuple, Optional, Sequence

import yaml

import constants


class ConfigError(ValueError):
    """Raised when the configuration cannot start the strategy."""


class AppConfig(NamedTuple):
    """Typed configuration object."""
    token_quantity_to_use: Optional[Decimal]
    comparator_quantity_to_use: Optional[Decimal]
    ping_interval_ms: int
    negative_supply_sell_trigger: Decimal
    negative_supply_buy_trigger: Decimal
    price_fall_percent_trigger: Decimal
    slippage_percent: Decimal
    private_wallet_key: str
    json_rpc_endpoint_url: str
    token_address: str = constants.SPIRAL_TOKEN_ADDRESS
    token_decimals: int = constants.SPIRAL_TOKEN_DECIMALS
    comparator_address: str = constants.USDC_TOKEN_ADDRESS
    router_address: str = constants.UNISWAP_V2_ROUTER_ADDRESS
    factory_address: str = constants.UNISWAP_V2_FACTORY_ADDRESS
    chain_id: int = constants.DEFAULT_CHAIN_ID
    rpc_rate_limit_per_second: float = constants.DEFAULT_RPC_RATE_LIMIT_PER_SECOND
    rpc_timeout_seconds: float = constants.DEFAULT_RPC_TIMEOUT_SECONDS
    swap_deadline_seconds: int = constants.DEFAULT_SWAP_DEADLINE_SECONDS
    journal_db_path: Optional[str] = constants.DEFAULT_JOURNAL_PATH
    run_once: bool = False
    log_level: str = "INFO"

    @property
    def ping_interval_seconds(self) -> float:
        return self.ping_interval_ms / 1000.0

    @property
    def buys_quantity_with_comparator(self) -> bool:
        return self.comparator_quantity_to_use is not None


def _decimal(document: Mapping[str, Any], key: str, *, required: bool = True) -> Optional[Decimal]:
    value = document.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ConfigError(f"'{key}' is required in the config document")
        return None
    if isinstance(value, bool):
        raise ConfigError(f"'{key}' must be a decimal number, got {value!r}")
    try:
        # str() keeps YAML floats such as 0.5 at their written digits.
        return Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ConfigError(f"'{key}' must be a decimal number, got {value!r}") from exc


def _positive_quantity(document: Mapping[str, Any], key: str) -> Optional[Decimal]:
    quantity = _decimal(document, key, required=False)
    if quantity is None or quantity == 0:
        return None
    if quantity < 0:
        raise ConfigError(f"'{key}' must be positive, got {quantity}")
    return quantity


def _int(document: Mapping[str, Any], key: str, default: Optional[int] = None) -> int:
    value = document.get(key, default)
    if value is None:
        raise ConfigError(f"'{key}' is required in the config document")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{key}' must be an integer, got {value!r}") from exc


def _float(document: Mapping[str, Any], key: str, default: float) -> float:
    value = document.get(key, default)
    if isinstance(value, bool):
        raise ConfigError(f"'{key}' must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{key}' must be a number, got {value!r}") from exc


def _string(document: Mapping[str, Any], key: str, env_var: Optional[str] = None, default: Optional[str] = None) -> str:
    value = os.environ.get(env_var) if env_var else None
    if not value:
        value = document.get(key, default)
    if not value or not str(value).strip():
        hint = f" (or set {env_var})" if env_var else ""
        raise ConfigError(f"'{key}' is required in the config document{hint}")
    return str(value).strip()


def read_config_document(path: Path | str) -> dict:
    """Load the YAML key/value document."""
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {config_path}: {exc}") from exc
    if not isinstance(document, dict):
        raise ConfigError(f"{config_path} must contain a key/value mapping")
    return document


def build_config(document: Mapping[str, Any], **overrides: Any) -> AppConfig:
    """
    Validate a parsed config document and build the immutable AppConfig.

    Environment variables override the wallet key and endpoint so secrets can
    stay out of the file. ``overrides`` carries CLI-only options.
    """
    token_quantity = _positive_quantity(document, 'token-quantity-to-use')
    comparator_quantity = _positive_quantity(document, 'comparator-quantity-to-use')
    if token_quantity is None and comparator_quantity is None:
        raise ConfigError("Must specify either 'token-quantity-to-use' or 'comparator-quantity-to-use' in the config")

    ping_interval_ms = _int(document, 'ping-interval-ms')
    if ping_interval_ms < 1:
        raise ConfigError(f"'ping-interval-ms' must be at least 1, got {ping_interval_ms}")

    fall_percent = _decimal(document, 'price-fall-percent-trigger')
    if fall_percent < 0 or fall_percent > 100:
        raise ConfigError(f"'price-fall-percent-trigger' must be within 0-100, got {fall_percent}")

    slippage = _decimal(document, 'slippage-percent')
    if slippage < 0 or slippage >= 100:
        raise ConfigError(f"'slippage-percent' must be within [0, 100), got {slippage}")

    rate_limit = _float(document, 'rpc-rate-limit-per-second', constants.DEFAULT_RPC_RATE_LIMIT_PER_SECOND)
    if rate_limit < 0:
        raise ConfigError(f"'rpc-rate-limit-per-second' must not be negative, got {rate_limit}")
    timeout = _float(document, 'rpc-timeout-seconds', constants.DEFAULT_RPC_TIMEOUT_SECONDS)
    if timeout <= 0:
        raise ConfigError(f"'rpc-timeout-seconds' must be positive, got {timeout}")
    journal_db_path = document.get('journal-db-path', constants.DEFAULT_JOURNAL_PATH)

    values = dict(
        token_quantity_to_use=token_quantity,
        comparator_quantity_to_use=comparator_quantity,
        ping_interval_ms=ping_interval_ms,
        negative_supply_sell_trigger=_decimal(document, 'negative-supply-sell-trigger'),
        negative_supply_buy_trigger=_decimal(document, 'negative-supply-buy-trigger'),
        price_fall_percent_trigger=fall_percent,
        slippage_percent=slippage,
        private_wallet_key=_string(document, 'private-wallet-key', constants.PRIVATE_WALLET_KEY_ENV_VAR),
        json_rpc_endpoint_url=_string(document, 'json-rpc-endpoint-url', constants.JSON_RPC_ENDPOINT_URL_ENV_VAR),
        token_address=_string(document, 'token-address', default=constants.SPIRAL_TOKEN_ADDRESS),
        token_decimals=_int(document, 'token-decimals', constants.SPIRAL_TOKEN_DECIMALS),
        comparator_address=_string(document, 'comparator-address', default=constants.USDC_TOKEN_ADDRESS),
        router_address=_string(document, 'router-address', default=constants.UNISWAP_V2_ROUTER_ADDRESS),
        factory_address=_string(document, 'factory-address', default=constants.UNISWAP_V2_FACTORY_ADDRESS),
        chain_id=_int(document, 'chain-id', constants.DEFAULT_CHAIN_ID),
        rpc_rate_limit_per_second=rate_limit,
        rpc_timeout_seconds=timeout,
        swap_deadline_seconds=_int(document, 'swap-deadline-seconds', constants.DEFAULT_SWAP_DEADLINE_SECONDS),
        journal_db_path=str(journal_db_path) if journal_db_path else None,
    )
    values.update({key: value for key, value in overrides.items() if value is not None})
    return AppConfig(**values)


def load_config(argv: Optional[Sequence[str]] = None) -> AppConfig:
    """
    Parses command-line arguments and the config document to create a configuration object.
    """
    parser = argparse.ArgumentParser(
        description="Cycle a wallet between liquidity provision and holding the comparator asset, timed by negative supply.",
        epilog="Example: ./main.py --config config.yaml",
    )
    parser.add_argument('--config', default=constants.DEFAULT_CONFIG_PATH, help=f'Path to the YAML config document (default: {constants.DEFAULT_CONFIG_PATH}).')
    parser.add_argument('--once', action='store_true', help='Run a single full cycle and exit.')
    parser.add_argument('--journal', type=str, help='SQLite journal path; overrides journal-db-path from the config.')
    parser.add_argument('--no-journal', action='store_true', help='Disable the trade journal.')
    parser.add_argument('--log-level', default='INFO', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Logging level (default: INFO).')

    args = parser.parse_args(argv)

    document = read_config_document(args.config)
    config = build_config(document, run_once=args.once, journal_db_path=args.journal, log_level=args.log_level)
    if args.no_journal:
        config = config._replace(journal_db_path=None)
    return config
