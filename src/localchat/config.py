"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


class ProviderConfig(BaseModel):
    base_url: str = "http://localhost:11434"
    default_model: str = "llama3.2"
    timeout: float = 300.0
    probe_timeout: float = 5.0
    helper_timeout: float = 30.0  # title and image-prompt helper calls
    default_temperature: float = 0.7
    default_max_tokens: int = 2048


class RendererConfig(BaseModel):
    enabled: bool = False
    base_url: str = "http://localhost:7860"
    default_model: str = "sd_xl_base_1.0.safetensors"
    api_user: Optional[str] = None
    api_password: Optional[str] = None
    timeout: float = 300.0
    probe_timeout: float = 10.0
    images_dir: str = "./data/images"
    url_prefix: str = "/images"
    default_negative_prompt: str = "low quality, blurry, distorted, deformed, ugly"


class ChatConfig(BaseModel):
    history_limit: int = 50
    context_messages: int = 10
    system_prompt: str = ""


class StorageConfig(BaseModel):
    db_path: str = "./data/localchat.db"


class AppConfig(BaseModel):
    log_level: str = "INFO"
    data_dir: str = "./data"
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    renderer: RendererConfig = Field(default_factory=RendererConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if extra and var_name in extra:
            return extra[var_name]
        value = os.environ.get(var_name)
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(
    config_path: str | Path = "config.yaml",
    env_path: str | Path = ".env",
    required: bool = True,
) -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation.

    With ``required=False`` a missing file yields the built-in defaults.
    """
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        if not required:
            return AppConfig()
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")

    # First pass: extract data_dir for self-referencing
    raw_data = yaml.safe_load(raw_text) or {}
    data_dir = raw_data.get("data_dir", "./data")
    data_dir = _interpolate_env_vars(data_dir)

    # Second pass: interpolate all env vars
    interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
    data = yaml.safe_load(interpolated) or {}

    return AppConfig(**data)
