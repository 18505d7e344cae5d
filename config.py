#!/usr/bin/env python3
"""
Configuration Module - loads every setting once at process start
Both the bot (main.py) and the cron job (verify_cron.py) call load_settings()
and pass the resulting Settings object around explicitly.
"""

import os
import logging
from dataclasses import dataclass
from typing import FrozenSet, Mapping, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_LCD_URL = "https://lcd.secret.express"
DEFAULT_CHAIN_ID = "secret-4"
DEFAULT_PRICE_API_URL = "https://prodv1.securesecrets.org/graphql"


class ConfigError(Exception):
    """Raised when required settings are missing or malformed."""


@dataclass(frozen=True)
class Settings:
    telegram_token: str
    private_chat_id: int
    admin_user_ids: FrozenSet[int]
    lcd_url: str
    chain_id: str
    balance_contract: str
    balance_code_hash: str
    membership_contract: str
    membership_code_hash: str
    min_balance: int
    validator_address: Optional[str]
    chain_timeout: float
    data_dir: str
    database_url: Optional[str]
    price_api_url: str
    price_cache_ttl: float
    invite_ttl_minutes: int

    @property
    def sqlite_path(self) -> str:
        return os.path.join(self.data_dir, "members.db")


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _parse_float(name: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the environment (plus .env when env is not given)."""
    if env is None:
        load_dotenv()
        env = os.environ

    def get(name, default=None):
        value = env.get(name, default)
        if isinstance(value, str):
            value = value.strip()
        return value or default

    required = [
        "TELEGRAM_BOT_TOKEN",
        "PRIVATE_CHAT_ID",
        "BALANCE_CONTRACT_ADDRESS",
        "BALANCE_CONTRACT_CODE_HASH",
    ]
    missing = [name for name in required if not get(name)]
    if missing:
        raise ConfigError(f"Missing required settings: {', '.join(missing)}")

    admin_raw = get("ADMIN_USER_ID", "")
    admin_ids = frozenset(
        _parse_int("ADMIN_USER_ID", part.strip())
        for part in admin_raw.split(",")
        if part.strip()
    )

    balance_contract = get("BALANCE_CONTRACT_ADDRESS")
    balance_code_hash = get("BALANCE_CONTRACT_CODE_HASH")

    min_balance = _parse_int("MIN_BALANCE", get("MIN_BALANCE", "1000000"))
    if min_balance < 0:
        raise ConfigError("MIN_BALANCE must not be negative")

    settings = Settings(
        telegram_token=get("TELEGRAM_BOT_TOKEN"),
        private_chat_id=_parse_int("PRIVATE_CHAT_ID", get("PRIVATE_CHAT_ID")),
        admin_user_ids=admin_ids,
        lcd_url=get("LCD_URL", DEFAULT_LCD_URL).rstrip("/"),
        chain_id=get("CHAIN_ID", DEFAULT_CHAIN_ID),
        balance_contract=balance_contract,
        balance_code_hash=balance_code_hash,
        membership_contract=get("MEMBERSHIP_CONTRACT_ADDRESS", balance_contract),
        membership_code_hash=get("MEMBERSHIP_CONTRACT_CODE_HASH", balance_code_hash),
        min_balance=min_balance,
        validator_address=get("VALIDATOR_ADDRESS"),
        chain_timeout=_parse_float("CHAIN_TIMEOUT", get("CHAIN_TIMEOUT", "15")),
        data_dir=get("DATA_DIR", "/app/data" if os.path.exists("/app/data") else "."),
        database_url=get("DATABASE_URL"),
        price_api_url=get("PRICE_API_URL", DEFAULT_PRICE_API_URL),
        price_cache_ttl=_parse_float("PRICE_CACHE_TTL", get("PRICE_CACHE_TTL", "300")),
        invite_ttl_minutes=_parse_int("INVITE_TTL_MINUTES", get("INVITE_TTL_MINUTES", "10")),
    )

    if not settings.admin_user_ids:
        logger.warning("ADMIN_USER_ID not set - /audit and /users are disabled")

    return settings
