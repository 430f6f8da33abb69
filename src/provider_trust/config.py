"""
Configuration utilities for ProviderTrust.

Loads the YAML configuration, overlays it on the built-in defaults and
applies environment overrides for secrets and deployment paths.
"""

import os
import logging
import yaml
from typing import Dict, Any
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/provider_trust.yaml"


def get_default_config() -> Dict[str, Any]:
    """
    Get default configuration.

    Returns:
        Default configuration dictionary
    """
    return {
        "database": {
            "path": "data/provider_trust.db"
        },
        "address": {
            "abbreviate_street_words": True,
            "default_phone_region": "US"
        },
        "registry": {
            "api_url": "https://npiregistry.cms.hhs.gov/api/",
            "api_version": "2.1",
            "timeout_seconds": 30,
            "requests_per_second": 1.0,
            "batch_size": 50,
            "stale_after_days": 90,
            "retry": {
                "max_attempts": 5,
                "initial_delay": 1.0,
                "max_delay": 32.0,
                "jitter": 0.1
            }
        },
        "geocoding": {
            "api_url": "https://maps.googleapis.com/maps/api/geocode/json",
            "api_key": None,
            "timeout_seconds": 10,
            "requests_per_second": 40,
            "bucket_capacity": 40,
            "batch_size": 500,
            "cost_per_1000": 5.0,
            "progress_every": 100,
            "retry": {
                "max_attempts": 4,
                "initial_delay": 2.0,
                "max_delay": 16.0,
                "jitter": 0.0
            }
        },
        "confidence": {
            "verification_ttl_months": 6,
            "sweep_batch_size": 100,
            "sybil_window_days": 30,
            "min_verifications_for_consensus": 3,
            "min_confidence_for_status_change": 60
        },
        "matching": {
            "accept_threshold": 0.80,
            "ambiguous_threshold": 0.70
        },
        "logging": {
            "level": "INFO",
            "log_dir": "logs"
        }
    }


def merge_configs(base_config: Dict[str, Any], override_config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge two configuration dictionaries.

    Args:
        base_config: Base configuration
        override_config: Override configuration

    Returns:
        Merged configuration
    """
    merged = base_config.copy()

    for key, value in override_config.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_configs(merged[key], value)
        else:
            merged[key] = value

    return merged


def apply_environment_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay values from the environment (and a local .env file)."""
    load_dotenv()

    overrides: Dict[str, Any] = {}
    if os.getenv("PROVIDER_TRUST_DB"):
        overrides["database"] = {"path": os.getenv("PROVIDER_TRUST_DB")}
    if os.getenv("NPPES_API_URL"):
        overrides["registry"] = {"api_url": os.getenv("NPPES_API_URL")}
    if os.getenv("GOOGLE_MAPS_API_KEY"):
        overrides["geocoding"] = {"api_key": os.getenv("GOOGLE_MAPS_API_KEY")}

    return merge_configs(config, overrides)


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate configuration.

    Args:
        config: Configuration dictionary

    Raises:
        ConfigurationError: If a section is missing or a value is out of range
    """
    for section in ["database", "registry", "geocoding", "confidence", "matching"]:
        if section not in config:
            raise ConfigurationError(f"Missing required configuration section: {section}")

    if config["registry"].get("requests_per_second", 0) <= 0:
        raise ConfigurationError("registry.requests_per_second must be positive")
    if config["geocoding"].get("requests_per_second", 0) <= 0:
        raise ConfigurationError("geocoding.requests_per_second must be positive")

    ttl = config["confidence"].get("verification_ttl_months")
    if not isinstance(ttl, int) or ttl < 1:
        raise ConfigurationError("confidence.verification_ttl_months must be a positive integer")

    matching = config["matching"]
    ambiguous = matching.get("ambiguous_threshold")
    accept = matching.get("accept_threshold")
    if not (isinstance(ambiguous, (int, float)) and isinstance(accept, (int, float))
            and 0 <= ambiguous <= accept <= 1):
        raise ConfigurationError(
            "matching thresholds must satisfy 0 <= ambiguous_threshold <= accept_threshold <= 1"
        )

    logger.debug("Configuration validation passed")


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """
    Load configuration from YAML file.

    Missing files fall back to the defaults; a file that exists but does not
    parse is a hard error.

    Args:
        config_path: Path to configuration file

    Returns:
        Configuration dictionary
    """
    config = get_default_config()
    config_file = Path(config_path)

    if config_file.exists():
        try:
            with open(config_file, 'r') as f:
                file_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse configuration {config_path}: {e}") from e
        config = merge_configs(config, file_config)
        logger.info(f"Loaded configuration from {config_path}")
    else:
        logger.warning(f"Configuration file {config_path} not found, using defaults")

    config = apply_environment_overrides(config)
    validate_config(config)
    return config
