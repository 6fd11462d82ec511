#!/usr/bin/env python3
"""
Configuration loader for searchlight ridge-regression analyses.

Handles:
- Loading YAML configuration files
- Merging study configs with the packaged defaults
- Environment variable substitution
- Configuration validation (run design, folds, execution)
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional
import yaml


DEFAULT_CONFIG_PATH = Path(__file__).parent / 'configs' / 'default.yaml'

VALID_CORRELATION_POLICIES = ('clip', 'raise')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required parameters."""
    pass


def load_yaml(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML configuration file.

    Parameters
    ----------
    file_path : Path
        Path to YAML file

    Returns
    -------
    dict
        Loaded configuration

    Raises
    ------
    ConfigurationError
        If file doesn't exist or YAML is invalid
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise ConfigurationError(f"Configuration file not found: {file_path}")

    try:
        with open(file_path, 'r') as f:
            config = yaml.safe_load(f)
        return config if config is not None else {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {file_path}: {e}")


def merge_configs(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merge two configuration dictionaries.

    Parameters
    ----------
    base : dict
        Base configuration (defaults)
    override : dict
        Override configuration (study-specific)

    Returns
    -------
    dict
        Merged configuration (override takes precedence)
    """
    merged = base.copy()

    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_configs(merged[key], value)
        else:
            merged[key] = value

    return merged


def substitute_variables(config: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Substitute environment variables and config references in strings.

    Supports:
    - ${ENV_VAR} - environment variables
    - ${config.key.subkey} - references to other config values

    Parameters
    ----------
    config : dict
        Configuration dictionary
    context : dict, optional
        Context for variable substitution (defaults to config itself)

    Returns
    -------
    dict
        Configuration with substituted values
    """
    if context is None:
        context = config

    pattern = re.compile(r'\$\{([^}]+)\}')

    def substitute_string(value: str, ctx: Dict[str, Any]) -> str:
        def replacer(match):
            var_path = match.group(1)

            if var_path in os.environ:
                return os.environ[var_path]

            # Config reference, e.g. ${paths.study_root}
            try:
                val = ctx
                for part in var_path.split('.'):
                    val = val[part]
                return str(val)
            except (KeyError, TypeError):
                return match.group(0)

        return pattern.sub(replacer, value)

    def process_value(value: Any, ctx: Dict[str, Any]) -> Any:
        if isinstance(value, str):
            return substitute_string(value, ctx)
        elif isinstance(value, dict):
            return {k: process_value(v, ctx) for k, v in value.items()}
        elif isinstance(value, list):
            return [process_value(item, ctx) for item in value]
        else:
            return value

    # Iterate to resolve chained references (A -> B -> C)
    result = config
    for _ in range(5):
        resolved = process_value(result, result)
        if resolved == result:
            break
        result = resolved

    return result


def _require_positive_int(config: Dict[str, Any], key_path: str) -> None:
    value = get_config_value(config, key_path)
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise ConfigurationError(f"{key_path} must be positive integer, got {value!r}")


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate configuration has all required parameters.

    Parameters
    ----------
    config : dict
        Configuration to validate

    Raises
    ------
    ConfigurationError
        If required parameters are missing or invalid
    """
    if 'design' not in config:
        raise ConfigurationError("Missing required section: design")

    for field in ('run_length', 'n_runs'):
        if field not in config['design']:
            raise ConfigurationError(f"Missing required design field: design.{field}")
        _require_positive_int(config, f'design.{field}')

    folds = config.get('folds', {})
    training = folds.get('training')
    test = folds.get('test')
    if not training or not test:
        raise ConfigurationError("folds.training and folds.test are both required")
    if len(training) != len(test):
        raise ConfigurationError(
            f"folds.training has {len(training)} rows but folds.test has {len(test)}"
        )

    n_runs = config['design']['n_runs']
    for table_name, table in (('training', training), ('test', test)):
        for row in table:
            for run in row:
                # Run numbers in config files start at 1
                if not isinstance(run, int) or not 1 <= run <= n_runs:
                    raise ConfigurationError(
                        f"folds.{table_name} run {run!r} outside 1..{n_runs}"
                    )

    policy = get_config_value(config, 'ridge.perfect_correlation', 'clip')
    if policy not in VALID_CORRELATION_POLICIES:
        raise ConfigurationError(
            f"ridge.perfect_correlation must be one of {VALID_CORRELATION_POLICIES}, "
            f"got {policy!r}"
        )

    if 'execution' in config:
        if 'n_jobs' in config['execution']:
            _require_positive_int(config, 'execution.n_jobs')

    stream = config.get('stream', {})
    if stream.get('index_base', 1) not in (0, 1):
        raise ConfigurationError(
            f"stream.index_base must be 0 or 1, got {stream.get('index_base')!r}"
        )
    if stream.get('byte_order', 'little') not in ('little', 'big'):
        raise ConfigurationError(
            f"stream.byte_order must be 'little' or 'big', got {stream.get('byte_order')!r}"
        )


def load_config(config_path: Optional[Path] = None, validate: bool = True) -> Dict[str, Any]:
    """
    Load and process configuration file.

    This is the main entry point for loading configs. It:
    1. Loads the packaged defaults
    2. Merges the study config over them (if given)
    3. Substitutes variables
    4. Validates the result

    Parameters
    ----------
    config_path : Path, optional
        Path to study-specific configuration file. If None, the
        packaged defaults are returned.
    validate : bool
        Whether to validate the configuration

    Returns
    -------
    dict
        Processed configuration

    Raises
    ------
    ConfigurationError
        If configuration is invalid
    """
    config = load_yaml(DEFAULT_CONFIG_PATH)

    if config_path is not None:
        config_path = Path(config_path)
        study_config = load_yaml(config_path)
        config = merge_configs(config, study_config)

    config = substitute_variables(config)

    if validate:
        validate_config(config)

    return config


def get_config_value(config: Dict[str, Any], key_path: str, default: Any = None) -> Any:
    """
    Get a value from config using dot notation.

    Parameters
    ----------
    config : dict
        Configuration dictionary
    key_path : str
        Dot-separated path (e.g., 'design.run_length')
    default : any
        Default value if key not found

    Returns
    -------
    any
        Value at key_path, or default if not found

    Examples
    --------
    >>> get_config_value(config, 'design.run_length')
    50
    >>> get_config_value(config, 'missing.key', default=0.5)
    0.5
    """
    try:
        value = config
        for part in key_path.split('.'):
            value = value[part]
        return value
    except (KeyError, TypeError):
        return default
