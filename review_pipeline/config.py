"""
Configuration management for the review ingestion pipeline.
"""

import copy
import logging
from pathlib import Path
from typing import Dict, Any

import yaml

from review_pipeline.models import PlanTier

log = logging.getLogger("pipeline")

# Default configuration path
DEFAULT_CONFIG_PATH = Path("config.yaml")

# Default configuration - will be overridden by config file
DEFAULT_CONFIG = {
    "db_path": "directory.db",
    "log_level": "INFO",
    "log_dir": "logs",
    "log_file": "pipeline.log",
    "source": {
        "base_url": "https://api.geoscraper.net/google/map/review",
        "token": "",  # falls back to the env var named by token_env
        "token_env": "REVIEW_SOURCE_TOKEN",
        "timeout": 30,
        "page_delay": 0.5,
        "max_pages": 50,
        "sort_by": "newest",
        "language": "en",
    },
    "queue": {
        "max_retries": 3,
        "backoff_base_seconds": 60,
        "backoff_max_seconds": 3600,
        "backoff_jitter": 0.2,
        "stuck_after_seconds": 300,
        "recent_window_hours": 24,
    },
    "processor": {
        "concurrency": 3,
        "batch_size": 1,
        "max_records_per_sync": 200,
        "source_tag": "gmb_api",
    },
    "import": {
        "chunk_size": 500,
        "chunk_delay": 0.1,
        "max_errors": 100,
        "auto_match_threshold": 0.70,
        "candidate_floor": 0.30,
        "max_alternatives": 5,
    },
    "dedup": {
        "similarity_threshold": 0.90,
    },
    "scheduler": {
        "refill_below": 500,
        "refill_target": 600,
        "max_per_refill": 300,
        "stale_after_hours": 24,
    },
    "quotas": {},  # e.g. {"free": {"max_import": 100}}
    "api": {
        "allowed_origins": "*",
    },
}

_POSITIVE_INTS = {
    "queue": ("max_retries", "stuck_after_seconds"),
    "processor": ("concurrency", "batch_size", "max_records_per_sync"),
    "import": ("chunk_size", "max_errors", "max_alternatives"),
    "scheduler": ("refill_below", "refill_target", "max_per_refill"),
    "source": ("max_pages",),
}
_NON_NEGATIVE_NUMBERS = {
    "queue": ("backoff_base_seconds", "backoff_max_seconds", "backoff_jitter",
              "recent_window_hours"),
    "import": ("chunk_delay",),
    "source": ("timeout", "page_delay"),
    "scheduler": ("stale_after_hours",),
}
_RATIOS = {
    "import": ("auto_match_threshold", "candidate_floor"),
    "dedup": ("similarity_threshold",),
}


def _is_number(val) -> bool:
    return isinstance(val, (int, float)) and not isinstance(val, bool)


def _validate_config(config: Dict[str, Any]) -> None:
    """Validate config values, falling back to safe defaults on bad input."""
    for section, keys in _POSITIVE_INTS.items():
        cfg = config.setdefault(section, {})
        for key in keys:
            val = cfg.get(key)
            if not isinstance(val, int) or isinstance(val, bool) or val <= 0:
                log.warning("Invalid %s.%s %r, falling back to %r",
                            section, key, val, DEFAULT_CONFIG[section][key])
                cfg[key] = DEFAULT_CONFIG[section][key]

    for section, keys in _NON_NEGATIVE_NUMBERS.items():
        cfg = config.setdefault(section, {})
        for key in keys:
            val = cfg.get(key)
            if not _is_number(val) or val < 0:
                log.warning("Invalid %s.%s %r, falling back to %r",
                            section, key, val, DEFAULT_CONFIG[section][key])
                cfg[key] = DEFAULT_CONFIG[section][key]

    for section, keys in _RATIOS.items():
        cfg = config.setdefault(section, {})
        for key in keys:
            val = cfg.get(key)
            if not _is_number(val) or not 0 <= val <= 1:
                log.warning("Invalid %s.%s %r, falling back to %r",
                            section, key, val, DEFAULT_CONFIG[section][key])
                cfg[key] = DEFAULT_CONFIG[section][key]

    quotas = config.get("quotas") or {}
    if not isinstance(quotas, dict):
        log.warning("Invalid quotas section, ignoring")
        quotas = {}
    for tier in list(quotas):
        try:
            PlanTier.parse(tier)
        except ValueError:
            log.warning("Unknown tier '%s' in quotas, ignoring", tier)
            del quotas[tier]
    config["quotas"] = quotas


def load_config(config_path: Path = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load configuration from YAML file or use defaults"""
    config = copy.deepcopy(DEFAULT_CONFIG)
    config_path = Path(config_path)

    if config_path.exists():
        try:
            with open(config_path, 'r') as f:
                user_config = yaml.safe_load(f)
                if user_config:
                    # Merge configs, with nested dictionary support
                    def deep_update(d, u):
                        for k, v in u.items():
                            if isinstance(v, dict) and k in d and isinstance(d[k], dict):
                                deep_update(d[k], v)
                            else:
                                d[k] = v

                    deep_update(config, user_config)
                    log.info(f"Loaded configuration from {config_path}")
        except Exception as e:
            log.error(f"Error loading config from {config_path}: {e}")
            log.info("Using default configuration")
    else:
        log.info(f"Config file {config_path} not found, using default configuration")
        # Create a default config file for future use
        with open(config_path, 'w') as f:
            yaml.dump(config, f, default_flow_style=False)
            log.info(f"Created default configuration file at {config_path}")

    _validate_config(config)
    return config
