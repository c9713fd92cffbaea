"""
Configuration management and loading.

Handles the YAML settings file and environment variables.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..core.policy import DEFAULT_QUOTA_POLICY, QuotaPolicy
from ..core.pricing import DEFAULT_PRICING_TABLE, PricingTable
from ..storage.db import DEFAULT_DB_PATH

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransportSettings:
    """Request parameters and timeouts for the completion service."""
    base_url: Optional[str] = None
    api_key_env: str = "OPENAI_API_KEY"
    timeout: float = 60.0
    idle_timeout: float = 30.0
    max_tokens: int = 1000
    temperature: float = 0.7
    presence_penalty: float = 0.1
    frequency_penalty: float = 0.1
    estimated_completion_tokens: int = 1000

    def __post_init__(self):
        """Validate timeouts and token counts are positive."""
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")
        if self.idle_timeout <= 0:
            raise ValueError("idle_timeout must be > 0")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if self.estimated_completion_tokens < 0:
            raise ValueError("estimated_completion_tokens must be >= 0")

    def api_key(self) -> Optional[str]:
        """API key from the configured environment variable."""
        return os.environ.get(self.api_key_env)


@dataclass(frozen=True)
class Settings:
    """Complete application settings."""
    model: str = "gpt-4"
    quota: QuotaPolicy = DEFAULT_QUOTA_POLICY
    pricing: PricingTable = DEFAULT_PRICING_TABLE
    transport: TransportSettings = field(default_factory=TransportSettings)
    db_path: str = DEFAULT_DB_PATH


_TRANSPORT_TYPES = {
    "base_url": str,
    "api_key_env": str,
    "timeout": float,
    "idle_timeout": float,
    "max_tokens": int,
    "temperature": float,
    "presence_penalty": float,
    "frequency_penalty": float,
    "estimated_completion_tokens": int,
}


def load_settings(path: str) -> Settings:
    """Load and validate settings from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to unexpected cost overruns. Omitted sections keep their defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'model', 'quota', 'pricing', 'transport', 'storage'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    settings = Settings()

    if 'model' in raw_config:
        model = raw_config['model']
        if not isinstance(model, str) or not model.strip():
            raise ValueError("'model' must be a non-empty string")
        settings = replace(settings, model=model)

    if 'quota' in raw_config:
        settings = replace(settings, quota=DEFAULT_QUOTA_POLICY.merged(raw_config['quota']))

    if 'pricing' in raw_config:
        pricing_data = raw_config['pricing']
        if not isinstance(pricing_data, dict):
            raise ValueError("'pricing' must be a dictionary")
        for model_name, entry in pricing_data.items():
            _validate_pricing_entry(entry, f"pricing.{model_name}")
        models = PricingTable.from_dict(pricing_data).prices
        settings = replace(settings, pricing=DEFAULT_PRICING_TABLE.with_models(models))

    if 'transport' in raw_config:
        settings = replace(settings, transport=_parse_transport(raw_config['transport']))

    if 'storage' in raw_config:
        storage_data = raw_config['storage']
        if not isinstance(storage_data, dict):
            raise ValueError("'storage' must be a dictionary")
        unknown_keys = set(storage_data.keys()) - {'db_path'}
        if unknown_keys:
            raise ValueError(f"Unknown keys in storage: {unknown_keys}")
        if 'db_path' in storage_data:
            if not isinstance(storage_data['db_path'], str):
                raise ValueError("'storage.db_path' must be a string")
            settings = replace(settings, db_path=storage_data['db_path'])

    return settings


def load_settings_or_default(path: Optional[str]) -> Settings:
    """Load settings, falling back to defaults when the file is missing or invalid.

    Configuration problems are logged rather than raised so a broken file
    never stops the pipeline.
    """
    if path is None:
        return Settings()
    try:
        return load_settings(path)
    except (FileNotFoundError, yaml.YAMLError, ValueError) as e:
        logger.warning("Using default settings: %s", e)
        return Settings()


def _validate_pricing_entry(entry: Any, path: str) -> None:
    """Validate one model's pricing entry.

    Raises:
        ValueError: If the entry is invalid
    """
    if not isinstance(entry, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    allowed_keys = {'prompt_per_1k', 'completion_per_1k', 'context_window'}
    unknown_keys = set(entry.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    for key in ('prompt_per_1k', 'completion_per_1k'):
        if key not in entry:
            raise ValueError(f"Missing required '{key}' in {path}")
        value = entry[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ValueError(f"'{key}' in {path} must be >= 0")

    if 'context_window' not in entry:
        raise ValueError(f"Missing required 'context_window' in {path}")
    window = entry['context_window']
    if isinstance(window, bool) or not isinstance(window, int) or window <= 0:
        raise ValueError(f"'context_window' in {path} must be a positive integer")


def _parse_transport(data: Any) -> TransportSettings:
    """Parse and validate the transport section.

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(data, dict):
        raise ValueError("'transport' must be a dictionary")

    unknown_keys = set(data.keys()) - set(_TRANSPORT_TYPES)
    if unknown_keys:
        raise ValueError(f"Unknown keys in transport: {unknown_keys}")

    values: Dict[str, Any] = {}
    for key, value in data.items():
        expected = _TRANSPORT_TYPES[key]
        if expected is str:
            if not isinstance(value, str):
                raise ValueError(f"'transport.{key}' must be a string")
        elif isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"'transport.{key}' must be a number")
        elif expected is int and not isinstance(value, int):
            raise ValueError(f"'transport.{key}' must be an integer")
        values[key] = expected(value)

    return TransportSettings(**values)
