from __future__ import annotations

import dataclasses
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from filebroker.codec import SessionCodec

ENV_PREFIX = "FILEBROKER_"


@dataclass(frozen=True)
class BrokerConfig:
    prefix: str = "comm"
    request_ext: str = "txt"
    response_ext: str = "json"

    poll_interval: float = 2.0
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    processing_delay: float = 0.0
    settle_time: float = 1.0
    max_concurrent: int = 3

    health_interval: float = 30.0
    restart_cooldown: float = 5.0

    response_poll_interval: float = 0.5
    response_timeout: float = 30.0

    stale_after: float = 600.0
    diagnostic_sample: int = 10
    error_signature_length: int = 80
    top_errors: int = 5

    @staticmethod
    def load(path: Path) -> "BrokerConfig":
        with path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)
        if not isinstance(raw, dict):
            raise ValueError(f"Broker config must be a JSON object: {path}")
        return BrokerConfig.from_mapping(raw)

    @staticmethod
    def from_mapping(raw: Mapping[str, Any]) -> "BrokerConfig":
        known = {f.name: f for f in dataclasses.fields(BrokerConfig)}
        values: Dict[str, Any] = {}
        for key, value in raw.items():
            if key not in known:
                continue
            values[key] = _coerce(known[key].type, value, key)
        return BrokerConfig(**values)

    def from_env(self, environ: Optional[Mapping[str, str]] = None) -> "BrokerConfig":
        """Overlay ``FILEBROKER_<FIELD>`` environment variables on this config."""
        env = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        for f in dataclasses.fields(self):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None or not raw.strip():
                continue
            overrides[f.name] = _coerce(f.type, raw.strip(), f.name)
        return self.replace(**overrides) if overrides else self

    def replace(self, **overrides: Any) -> "BrokerConfig":
        return dataclasses.replace(self, **overrides)

    def codec(self) -> SessionCodec:
        return SessionCodec(prefix=self.prefix, request_ext=self.request_ext, response_ext=self.response_ext)

    def backoff_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        return min(self.max_delay, max(0.0, self.base_delay) * (2 ** max(0, attempt)))


def _coerce(type_name: Any, value: Any, key: str) -> Any:
    # Annotations are strings under ``from __future__ import annotations``.
    name = type_name if isinstance(type_name, str) else getattr(type_name, "__name__", "")
    try:
        if name == "int":
            return int(value)
        if name == "float":
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid value for {key}: {value!r}") from exc
    return str(value)


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> BrokerConfig:
    env = os.environ if environ is None else environ
    config_path = path or env.get(ENV_PREFIX + "CONFIG")
    base = BrokerConfig.load(Path(config_path)) if config_path else BrokerConfig()
    return base.from_env(env)
