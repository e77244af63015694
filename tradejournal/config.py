"""Runtime configuration from .env.tradejournal and the process environment.

Environment variables win over the .env file.

    TRADEJOURNAL_EQUITY            starting equity (10000)
    TRADEJOURNAL_RISK_PERCENT      percent of equity risked per trade (2)
    TRADEJOURNAL_DYNAMIC_EQUITY    size from current equity instead of starting equity (true)
    TRADEJOURNAL_STORE_PATH        journal file for FileStore (./trading_journal.json)
    GEMINI_API_KEY                 enables the AI advisor
    TRADEJOURNAL_GEMINI_MODEL      model name (gemini-2.5-flash)
    KV_REST_API_URL                remote key/value service URL
    KV_REST_API_TOKEN              remote key/value service token
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from dotenv import dotenv_values
from loguru import logger

from .ledger import num
from .storage import FileStore, RemoteKVStore, Store

CONFIG = {**dotenv_values(".env.tradejournal"), **os.environ}

TRUTHY = {"1", "true", "yes", "on"}


def _flag(value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default

    return value.strip().lower() in TRUTHY


def _positive(config: Mapping, key: str, default: float) -> float:
    if (raw := config.get(key)) is None:
        return default

    if (value := num(raw)) <= 0:
        logger.warning("Ignoring {}={!r}, using {}", key, raw, default)
        return default

    return value


@dataclass(slots=True, frozen=True)
class JournalSettings:
    initial_equity: float = 10_000
    risk_percent: float = 2
    dynamic_equity: bool = True
    store_path: str = "./trading_journal.json"
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-2.5-flash"
    kv_url: str | None = None
    kv_token: str | None = None

    @classmethod
    def from_config(cls, config: Mapping | None = None) -> JournalSettings:
        """Build settings from 'config' (default: the module-level CONFIG)."""
        if config is None:
            config = CONFIG

        return cls(
            initial_equity=_positive(config, "TRADEJOURNAL_EQUITY", 10_000),
            risk_percent=_positive(config, "TRADEJOURNAL_RISK_PERCENT", 2),
            dynamic_equity=_flag(config.get("TRADEJOURNAL_DYNAMIC_EQUITY"), True),
            store_path=config.get("TRADEJOURNAL_STORE_PATH")
            or "./trading_journal.json",
            gemini_api_key=config.get("GEMINI_API_KEY") or None,
            gemini_model=config.get("TRADEJOURNAL_GEMINI_MODEL") or "gemini-2.5-flash",
            kv_url=config.get("KV_REST_API_URL") or None,
            kv_token=config.get("KV_REST_API_TOKEN") or None,
        )

    @property
    def remote_store_configured(self) -> bool:
        return bool(self.kv_url and self.kv_token)


def store_from_settings(settings: JournalSettings) -> Store:
    """Remote key/value store when credentials exist, else the local journal file."""
    if settings.remote_store_configured:
        logger.info("Using remote journal store at {}", settings.kv_url)
        return RemoteKVStore(settings.kv_url, settings.kv_token)  # type: ignore[arg-type]

    logger.info("Using journal file {}", settings.store_path)
    return FileStore(settings.store_path)  # type: ignore[arg-type]
