from __future__ import annotations

import logging
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

CONFIG_PATH = Path(__file__).resolve().with_name("config.yaml")


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():  # pragma: no cover - broken installation
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    load_dotenv()
    return OmegaConf.load(CONFIG_PATH)


def load_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build the runtime configuration.

    The packaged defaults are merged with ``overrides`` in struct mode, so a
    misspelled key fails loudly instead of being ignored. Environment
    interpolations are resolved once, here.
    """
    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=False))
    OmegaConf.set_struct(base, True)

    merged = DictConfig(OmegaConf.merge(base, OmegaConf.create(overrides or {})))
    OmegaConf.resolve(merged)
    return merged


def strategy_entries(config: DictConfig) -> List[Dict[str, Any]]:
    return OmegaConf.to_container(config.conversion.strategies, resolve=True)  # type: ignore[return-value]


def retention_settings(config: DictConfig) -> Dict[str, Any]:
    retention = config.retention
    return {
        "retention": timedelta(minutes=retention.window_minutes),
        "upload_retention": timedelta(minutes=retention.upload_window_minutes),
        "interval": timedelta(minutes=retention.sweep_interval_minutes),
        "stuck_after": timedelta(minutes=retention.stuck_after_minutes),
    }


def configure_logging(config: DictConfig) -> None:
    logging.basicConfig(level=str(config.logging.level).upper(), format=config.logging.format)
