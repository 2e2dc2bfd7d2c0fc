"""Configuration loading and merging utilities."""

import copy
from typing import Optional

import yaml

from achilles.errors import ConfigurationError


def merge_configs(base: dict, overrides: dict) -> dict:
    """Deep-merge *overrides* into a copy of *base* and return the result.

    Dict values are merged recursively; all other types are replaced.
    """
    result = copy.deepcopy(base)
    for k, v in overrides.items():
        if isinstance(v, dict) and isinstance(result.get(k), dict):
            result[k] = merge_configs(result[k], v)
        else:
            result[k] = copy.deepcopy(v)
    return result


def load_config(
    overrides: Optional[dict] = None,
    yaml_path: Optional[str] = None,
) -> dict:
    """Return a fully-resolved configuration dict.

    Resolution order (later wins):
      1. ``DEFAULT_CONFIG`` (always loaded)
      2. YAML file at *yaml_path*
      3. Python *overrides* dict

    Keys that ``DEFAULT_CONFIG`` does not define are rejected, so a typo in
    an option name fails the run before any database work.
    """
    from config.defaults import DEFAULT_CONFIG

    config = copy.deepcopy(DEFAULT_CONFIG)

    if yaml_path is not None:
        with open(yaml_path, "r") as fh:
            yaml_overrides = yaml.safe_load(fh) or {}
        if not isinstance(yaml_overrides, dict):
            raise ConfigurationError(f"{yaml_path}: expected a mapping at the top level")
        config = merge_configs(config, yaml_overrides)

    if overrides:
        config = merge_configs(config, overrides)

    unknown = sorted(set(config) - set(DEFAULT_CONFIG))
    if unknown:
        raise ConfigurationError(f"Unknown option(s): {', '.join(unknown)}")

    return config
