import logging
import os
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from .models import CaptionCraftConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable -> dotted config path
ENV_OVERRIDES = {
    "CAPTIONCRAFT_BROKER_PATH": "broker.db_path",
    "CAPTIONCRAFT_RECORDS_URL": "records.url",
    "CAPTIONCRAFT_TMP_DIR": "cleanup.tmp_dir",
    "OPENAI_API_KEY": "speech.api_key",
}

logger = logging.getLogger(__name__)


def get_config_value(config: Union[CaptionCraftConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: CaptionCraftConfig model or dict
        path: Dot-separated path like "cache.ttl_s"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, CaptionCraftConfig):
        config = config.model_dump()

    keys = path.split(".")
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def env_overrides(environ: Dict[str, str] = None) -> Dict[str, Any]:
    """Build a nested override dict from the environment variables we honour."""
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for var, path in ENV_OVERRIDES.items():
        value = environ.get(var)
        if not value:
            continue
        section, key = path.split(".")
        overrides.setdefault(section, {})[key] = value
    return overrides


def resolve_config(cli_args: Dict[str, Any] = None, environ: Dict[str, str] = None) -> CaptionCraftConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic CaptionCraftConfig model.

    Raises:
        pydantic.ValidationError: If the merged configuration is invalid
    """
    cli_args = cli_args or {}

    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))
    config_data = merge_dicts(config_data, env_overrides(environ))

    config = CaptionCraftConfig.from_dict(config_data)
    config = config.merge_cli_overrides(cli_args)

    logger.debug("Resolved config: broker=%s records=%s", config.broker.db_path, config.records.url)
    return config
