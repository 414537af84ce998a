"""
pocket-lm :: Worker Config

Runtime defaults for the worker, HTTP server and CLI.
Layering: dataclass defaults < JSON file < POCKET_LM_* env < CLI flags.

INL - 2025
"""

import json
import os
from typing import Optional, get_args
from dataclasses import dataclass, fields


@dataclass
class WorkerConfig:
    """Worker configuration."""
    # Models
    manifest_path: Optional[str] = None
    device: str = "cpu"
    tokenizer: str = "word"          # "word", "char" or "subword"
    tokenizer_path: Optional[str] = None
    chat_template_path: Optional[str] = None

    # Generation defaults
    default_max_tokens: int = 256
    default_temperature: float = 1.0
    default_top_p: Optional[float] = None
    default_top_k: Optional[int] = None
    default_timeout_s: float = 300.0

    # Document analysis
    analysis_temperature: float = 0.3
    summary_max_tokens: int = 200
    analysis_max_tokens: int = 50

    # Logging
    log_level: str = "INFO"
    json_logs: bool = False
    log_file: Optional[str] = None

    # HTTP
    host: str = "127.0.0.1"
    port: int = 8000
    api_key: Optional[str] = None

    @staticmethod
    def from_dict(data: dict) -> "WorkerConfig":
        """Build from a dict, ignoring keys this config does not know."""
        known = {f.name for f in fields(WorkerConfig)}
        return WorkerConfig(**{k: v for k, v in data.items() if k in known})

    @staticmethod
    def from_json(path: str) -> "WorkerConfig":
        """Load from a JSON file."""
        with open(path, "r") as f:
            data = json.load(f)
        return WorkerConfig.from_dict(data)

    def apply_env(self, environ=None) -> "WorkerConfig":
        """Override fields from POCKET_LM_<FIELD> environment variables."""
        environ = os.environ if environ is None else environ
        for f in fields(self):
            raw = environ.get(f"POCKET_LM_{f.name.upper()}")
            if raw is None:
                continue
            setattr(self, f.name, _coerce(raw, f.type))
        return self

    @staticmethod
    def from_env(environ=None) -> "WorkerConfig":
        return WorkerConfig().apply_env(environ)


def _coerce(raw: str, annotation):
    """Convert an env string to the type of the field it overrides."""
    args = [a for a in get_args(annotation) if a is not type(None)]
    target = args[0] if args else annotation
    if target is bool:
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if target is int:
        return int(raw)
    if target is float:
        return float(raw)
    return raw
