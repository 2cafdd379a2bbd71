import os
import re
import yaml
from pathlib import Path
from typing import Any, Dict

from repohost.utils.diagnostics import ConfigInvalid

ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::([^}]+))?\}")

DEFAULT_CONFIG_FILE = "repohost.yaml"

def interpolate_env_vars(content: str) -> str:
    """Replace ${VAR} or ${VAR:default} with environment variables."""
    def replace_match(match: re.Match) -> str:
        var_name = match.group(1)
        default_value = match.group(2) if match.group(2) is not None else ""
        return os.environ.get(var_name, default_value)

    return ENV_VAR_PATTERN.sub(replace_match, content)

def load_config(path: Path) -> Dict[str, Any]:
    """
    Load repohost.yaml with environment variable interpolation.

    Keeps the known sections: repohost (supervisor settings) and env (extra child variables).
    A missing file is not an error; the environment alone may configure the supervisor.
    """
    if not path.exists():
        return {}

    try:
        content = path.read_text()
        interpolated_content = interpolate_env_vars(content)
        full_config = yaml.safe_load(interpolated_content) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigInvalid(f"Could not read config file {path}: {exc}") from exc

    if not isinstance(full_config, dict):
        raise ConfigInvalid(f"Config file {path} must contain a mapping at the top level.")

    allowed_keys = {"repohost", "env"}
    filtered_config = {k: v for k, v in full_config.items() if k in allowed_keys}

    return filtered_config
