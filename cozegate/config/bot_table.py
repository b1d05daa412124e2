"""Model name -> bot id lookup table.

Loaded once from ``settings.bot_config`` (JSON object, legacy ``BOT_CONFIG``)
and the optional ``settings.bot_config_path`` file (YAML or JSON). Inline
JSON entries win over the file. The table is read-only after load.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

from cozegate.config.settings import Settings, settings
from cozegate.core.errors import ConfigurationError
from cozegate.util.logger import logger


@dataclass(frozen=True, slots=True)
class BotTable:
    entries: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    default_bot_id: str = ""

    def resolve(self, model: str | None) -> str:
        key = (model or "").strip()
        if key and key in self.entries:
            return self.entries[key]
        if self.default_bot_id:
            return self.default_bot_id
        raise ConfigurationError(
            f"no bot configured for model '{key}' and no default bot id set",
            code="bot_not_configured",
        )


def _coerce_entries(raw: Any, source: str) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"bot config from {source} must be a mapping")
    entries: dict[str, str] = {}
    for model, bot_id in raw.items():
        if not isinstance(bot_id, (str, int)) or isinstance(bot_id, bool) or not str(bot_id).strip():
            raise ConfigurationError(f"bot config from {source} has invalid bot id for model '{model}'")
        entries[str(model).strip()] = str(bot_id).strip()
    return entries


def _load_file(path_str: str) -> dict[str, str]:
    path = Path(path_str)
    if not path.is_file():
        raise ConfigurationError(f"bot config file not found: {path}")
    try:
        # YAML 是 JSON 的超集，两种格式都走 safe_load
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"invalid bot config file {path}: {exc}") from exc
    return _coerce_entries(loaded, str(path))


def _load_inline(raw: str) -> dict[str, str]:
    try:
        loaded = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"invalid BOT_CONFIG json: {exc}") from exc
    return _coerce_entries(loaded, "BOT_CONFIG")


def load_bot_table(source: Settings | None = None) -> BotTable:
    cfg = source or settings
    entries: dict[str, str] = {}
    if cfg.bot_config_path.strip():
        entries.update(_load_file(cfg.bot_config_path.strip()))
    if cfg.bot_config.strip():
        entries.update(_load_inline(cfg.bot_config))
    default_bot_id = cfg.default_bot_id.strip()
    if not entries and not default_bot_id:
        logger.warning("bot table is empty and no default bot id is set; chat requests will fail")
    logger.info("bot table loaded models=%d default_set=%s", len(entries), bool(default_bot_id))
    return BotTable(entries=MappingProxyType(entries), default_bot_id=default_bot_id)


@lru_cache(maxsize=1)
def get_bot_table() -> BotTable:
    return load_bot_table()
