"""
Configuration management and loading.

Handles metering limits, quota defaults, pricing and storage settings.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict

import yaml

from coach_meter.core.pricing import DEFAULT_PRICING_TABLE, ModelPricing, PricingTable
from coach_meter.storage.db import DEFAULT_DB_PATH, DEFAULT_TIMEOUT_SECONDS, check_db_path

DEFAULT_DAILY_TOKEN_LIMIT = 16000
DEFAULT_MONTHLY_QUOTA = 500000
DEFAULT_QUOTA_RESET_DAY = 1


@dataclass(frozen=True)
class MeteringConfig:
    """Complete metering configuration."""
    daily_token_limit: int = DEFAULT_DAILY_TOKEN_LIMIT
    monthly_quota: int = DEFAULT_MONTHLY_QUOTA
    quota_reset_day: int = DEFAULT_QUOTA_RESET_DAY
    pricing: PricingTable = field(default=DEFAULT_PRICING_TABLE)
    db_path: str = DEFAULT_DB_PATH
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    def __post_init__(self):
        """Validate limits are usable."""
        if self.daily_token_limit <= 0:
            raise ValueError("daily_token_limit must be > 0")
        if self.monthly_quota < 0:
            raise ValueError("monthly_quota must be >= 0")
        if not 1 <= self.quota_reset_day <= 31:
            raise ValueError("quota_reset_day must be between 1 and 31")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        check_db_path(self.db_path)


def default_config() -> MeteringConfig:
    """Configuration of the reference deployment."""
    return MeteringConfig()


def load_metering_config(path: str) -> MeteringConfig:
    """Load and validate metering configuration from a YAML file.

    Every section is optional, but unknown keys are rejected so a typo
    never silently falls back to a default limit.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MeteringConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Metering config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return default_config()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    _reject_unknown(raw_config, {'limits', 'quota', 'pricing', 'storage'}, "configuration")

    limits = _section(raw_config, 'limits')
    _reject_unknown(limits, {'daily_tokens'}, "limits")

    quota = _section(raw_config, 'quota')
    _reject_unknown(quota, {'monthly_tokens', 'reset_day'}, "quota")

    storage = _section(raw_config, 'storage')
    _reject_unknown(storage, {'db_path', 'timeout_seconds'}, "storage")

    pricing = DEFAULT_PRICING_TABLE
    if 'pricing' in raw_config:
        pricing = _parse_pricing(_section(raw_config, 'pricing'))

    return MeteringConfig(
        daily_token_limit=_int(limits, 'daily_tokens', DEFAULT_DAILY_TOKEN_LIMIT, "limits"),
        monthly_quota=_int(quota, 'monthly_tokens', DEFAULT_MONTHLY_QUOTA, "quota"),
        quota_reset_day=_int(quota, 'reset_day', DEFAULT_QUOTA_RESET_DAY, "quota"),
        pricing=pricing,
        db_path=str(storage.get('db_path', DEFAULT_DB_PATH)),
        timeout_seconds=_number(storage, 'timeout_seconds', DEFAULT_TIMEOUT_SECONDS, "storage")
    )


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _int(data: Dict, key: str, default: int, path: str) -> int:
    value = data.get(key, default)
    # bool is an int subclass; "true" is never a valid limit
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _number(data: Dict, key: str, default: float, path: str) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _price(value: Any, path: str) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"{path} must be a number")
    try:
        # str() keeps YAML floats like 0.000005 exact
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{path} must be a number")


def _parse_pricing(data: Dict) -> PricingTable:
    """Parse and validate the pricing section.

    Args:
        data: Pricing configuration data

    Returns:
        Validated PricingTable

    Raises:
        ValueError: If pricing configuration is invalid
    """
    _reject_unknown(data, {'default_model', 'models'}, "pricing")

    models_data = data.get('models')
    if not isinstance(models_data, dict) or not models_data:
        raise ValueError("'models' in pricing must be a non-empty dictionary")

    prices = {}
    for model_name, model_data in models_data.items():
        path = f"pricing.models.{model_name}"
        if not isinstance(model_data, dict):
            raise ValueError(f"Model '{model_name}' must be a dictionary")
        _reject_unknown(model_data, {'input_per_token', 'output_per_token'}, path)
        for key in ('input_per_token', 'output_per_token'):
            if key not in model_data:
                raise ValueError(f"Missing required '{key}' in {path}")

        prices[str(model_name)] = ModelPricing(
            input_price_per_token=_price(model_data['input_per_token'], f"{path}.input_per_token"),
            output_price_per_token=_price(model_data['output_per_token'], f"{path}.output_per_token")
        )

    if 'default_model' not in data:
        raise ValueError("Missing required 'default_model' in pricing")

    return PricingTable(prices=prices, default_model=str(data['default_model']))
