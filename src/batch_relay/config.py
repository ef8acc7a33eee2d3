import yaml
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .driver.errors import ConfigError
from .models import BatchRelayConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None,
    config_path: Optional[Path] = None,
) -> BatchRelayConfig:
    """
    Resolve config: Default < Local < --config file < CLI
    Returns validated BatchRelayConfig model.

    Raises:
        ConfigError: If the merged config fails validation
    """
    cli_args = cli_args or {}

    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))

    if config_path is not None:
        if not Path(config_path).exists():
            raise ConfigError(f"Config file not found: {config_path}")
        config_data = merge_dicts(config_data, load_yaml(Path(config_path)))

    try:
        config = BatchRelayConfig.from_dict(config_data)
        return config.merge_cli_overrides(cli_args)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
