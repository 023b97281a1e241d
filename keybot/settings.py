"""Process-wide giveaway settings.

Settings are resolved once at startup, later sources winning:
built-in defaults, then environment (``GIVEAWAY_DURATION``, ``AGE_BOUND``, ``REQUIRED_CHAT``,
usually from ``.env``), then rows of the ``config`` table. The result is
read-only; values written with :func:`set_config_value` apply on next load.
"""
from __future__ import annotations

import logging
import os
from types import MappingProxyType
from typing import Iterator, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import store_operation
from .errors import ConfigError
from .models import ConfigEntry

log = logging.getLogger(__name__)

DEFAULTS: Mapping[str, str] = MappingProxyType({
    "giveaway_duration": "3600",  # seconds
    "age_bound": "5",  # days
})

# smallest accepted value per integer setting
_INT_SETTINGS = {"giveaway_duration": 1, "age_bound": 0}
_VALIDATED = (*_INT_SETTINGS, "required_chat")


class Settings(Mapping[str, str]):
    def __init__(self, values: Mapping[str, str]):
        self._values = MappingProxyType(dict(values))
        for name in _INT_SETTINGS:
            self._int(name)
        self.required_chat

    def __getitem__(self, name: str) -> str:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Settings({dict(self._values)!r})"

    def _int(self, name: str) -> int:
        raw = self._values.get(name, DEFAULTS.get(name))
        try:
            value = int(str(raw).strip())
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
        minimum = _INT_SETTINGS[name]
        if value < minimum:
            raise ConfigError(f"{name} must be at least {minimum}, got {value}")
        return value

    @property
    def age_bound(self) -> int:
        return self._int("age_bound")

    @property
    def giveaway_duration(self) -> int:
        return self._int("giveaway_duration")

    @property
    def required_chat(self) -> Optional[str]:
        """Channel or group claimants must belong to: ``@name`` or a numeric chat id."""
        raw = (self._values.get("required_chat") or "").strip()
        if not raw or raw == "-":
            return None
        if raw.startswith("@") and len(raw) > 1:
            return raw
        if raw.lstrip("-").isdigit():
            return raw
        raise ConfigError(f"required_chat must be @name or a chat id, got {raw!r}")


def _from_env() -> dict[str, str]:
    out = {}
    for name in (*DEFAULTS, "required_chat"):
        raw = os.getenv(name.upper(), "").strip()
        if raw:
            out[name] = raw
    return out


@store_operation
def load_settings(db: Session) -> Settings:
    values = dict(DEFAULTS)
    values.update(_from_env())
    for entry in db.execute(select(ConfigEntry)).scalars():
        values[entry.key] = entry.value
    settings = Settings(values)
    log.info("Settings loaded: age_bound=%s giveaway_duration=%s",
             settings.age_bound, settings.giveaway_duration)
    return settings


@store_operation
def get_config_value(db: Session, key: str) -> Optional[str]:
    entry = db.get(ConfigEntry, key)
    return entry.value if entry else None


@store_operation
def set_config_value(db: Session, key: str, value: str) -> None:
    key = key.strip()
    if not key:
        raise ConfigError("config key must not be empty")
    if key in _VALIDATED:
        Settings({key: value})  # validate before persisting
    entry = db.get(ConfigEntry, key)
    if entry is None:
        db.add(ConfigEntry(key=key, value=value))
    else:
        entry.value = value
    db.commit()
    log.info("Config %s set to %r", key, value)
