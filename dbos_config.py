"""Configuration file support for dbos-treesitter.

Loads .dbos-lint.yml from the project root (or a specified path) and folds it
into the Policy the analysis runs with, plus path exclusions, suppression
settings and the reporting threshold.

Config format example:

    deterministic_decorators: ["Workflow", "Scheduled"]
    transactional_decorators: ["Transaction"]
    awaitable_types: ["WorkflowContext"]

    banned_calls:
      "crypto.randomUUID": [0, 0]
      "fetch": [1, null]        # null max: any number of arguments
      "console.log": null       # drop a default entry

    sql_clients:
      Knex: ["raw"]
      Sequelize: ["query"]

    scan_unannotated_for_injection: true
    check_all_query_arguments: false

    exclude_paths:
      - "node_modules/"
      - "dist/"
      - "**/*.spec.ts"

    suppression_keyword: "nosec"
    min_severity: "LOW"

Names listed under the decorator and type keys are added to the defaults.
Mapping entries override the default entry of the same name.
"""

import fnmatch
import os
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional

import yaml
from loguru import logger

from dbos_rules import (
    DEFAULT_POLICY, ArgCountRange, LintError, Policy, Severity,
)

CONFIG_FILENAMES = ('.dbos-lint.yml', '.dbos-lint.yaml')


class ConfigError(LintError):
    """The configuration file exists but cannot be used."""


@dataclass
class DbosLintConfig:
    """Parsed configuration from .dbos-lint.yml."""
    deterministic_decorators: List[str] = field(default_factory=list)
    transactional_decorators: List[str] = field(default_factory=list)
    awaitable_types: List[str] = field(default_factory=list)
    banned_calls: Dict[str, Optional[ArgCountRange]] = field(default_factory=dict)
    sql_clients: Dict[str, List[str]] = field(default_factory=dict)
    scan_unannotated_for_injection: Optional[bool] = None
    check_all_query_arguments: Optional[bool] = None
    exclude_paths: List[str] = field(default_factory=list)
    suppression_keyword: str = "nosec"
    min_severity: str = "LOW"
    source_path: Optional[str] = None

    def should_exclude(self, file_path: str) -> bool:
        """Check if a file path matches any exclusion pattern."""
        for pattern in self.exclude_paths:
            if fnmatch.fnmatch(file_path, pattern):
                return True
            # Also check if any path component matches
            if pattern.endswith('/') and pattern.rstrip('/') in file_path.split(os.sep):
                return True
        return False

    def to_policy(self, base: Policy = DEFAULT_POLICY) -> Policy:
        """Fold this configuration over base and return the resulting Policy."""
        banned = dict(base.banned_calls)
        for name, arg_range in self.banned_calls.items():
            if arg_range is None:
                banned.pop(name, None)
            else:
                banned[name] = arg_range

        clients: Dict[str, FrozenSet[str]] = dict(base.sql_clients)
        for type_name, methods in self.sql_clients.items():
            clients[type_name] = frozenset(methods)

        changes = dict(
            deterministic_decorators=base.deterministic_decorators | frozenset(self.deterministic_decorators),
            transactional_decorators=base.transactional_decorators | frozenset(self.transactional_decorators),
            awaitable_types=base.awaitable_types | frozenset(self.awaitable_types),
            banned_calls=banned,
            sql_clients=clients,
        )
        if self.scan_unannotated_for_injection is not None:
            changes['scan_unannotated_for_injection'] = self.scan_unannotated_for_injection
        if self.check_all_query_arguments is not None:
            changes['check_all_query_arguments'] = self.check_all_query_arguments
        return base.with_overrides(**changes)


def find_config(target_path: str) -> Optional[str]:
    """Walk up from target_path to the first .dbos-lint.yml/.yaml."""
    search_dir = os.path.abspath(target_path)
    if os.path.isfile(search_dir):
        search_dir = os.path.dirname(search_dir)

    while True:
        for name in CONFIG_FILENAMES:
            candidate = os.path.join(search_dir, name)
            if os.path.isfile(candidate):
                return candidate
        parent = os.path.dirname(search_dir)
        if parent == search_dir:
            return None  # Reached filesystem root
        search_dir = parent


def load_config(target_path: str, config_path: str = None) -> Optional[DbosLintConfig]:
    """Load dbos-treesitter configuration.

    Args:
        target_path: The scan target path (used to find .dbos-lint.yml)
        config_path: Explicit config path (overrides auto-discovery)

    Returns:
        DbosLintConfig if found, None otherwise.

    Raises:
        ConfigError: an explicit config path is missing, or the file is not
            valid YAML or not a mapping.
    """
    if config_path:
        if not os.path.isfile(config_path):
            raise ConfigError(f"Config file not found: {config_path}")
        return _parse_config(config_path)

    found = find_config(target_path)
    if found is None:
        logger.debug(f"no config file found above {target_path}")
        return None
    return _parse_config(found)


def _string_list(data: dict, key: str, config_path: str) -> List[str]:
    items = data.get(key, [])
    if not isinstance(items, list):
        logger.warning(f"{config_path}: '{key}' should be a list, ignoring")
        return []
    return [str(s) for s in items]


def _parse_arg_range(name: str, value, config_path: str) -> Optional[ArgCountRange]:
    if isinstance(value, list) and len(value) == 2 and isinstance(value[0], int) \
            and (value[1] is None or isinstance(value[1], int)):
        return ArgCountRange(value[0], value[1])
    raise ValueError(f"{config_path}: banned call '{name}' needs [min, max|null], got {value!r}")


def parse_config_data(data, config_path: str = "<config>") -> DbosLintConfig:
    """Build a DbosLintConfig from already-loaded YAML data."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path}: top level must be a mapping, got {type(data).__name__}")

    config = DbosLintConfig(source_path=config_path)
    config.deterministic_decorators = _string_list(data, 'deterministic_decorators', config_path)
    config.transactional_decorators = _string_list(data, 'transactional_decorators', config_path)
    config.awaitable_types = _string_list(data, 'awaitable_types', config_path)

    # Parse banned calls
    banned = data.get('banned_calls', {})
    if isinstance(banned, dict):
        for name, value in banned.items():
            if value is None:
                config.banned_calls[str(name)] = None
                continue
            try:
                config.banned_calls[str(name)] = _parse_arg_range(str(name), value, config_path)
            except ValueError as e:
                logger.warning(str(e))

    # Parse SQL clients
    clients = data.get('sql_clients', {})
    if isinstance(clients, dict):
        for type_name, methods in clients.items():
            if isinstance(methods, list):
                config.sql_clients[str(type_name)] = [str(m) for m in methods]
            else:
                logger.warning(f"{config_path}: sql client '{type_name}' needs a list of methods")

    for key in ('scan_unannotated_for_injection', 'check_all_query_arguments'):
        value = data.get(key)
        if isinstance(value, bool):
            setattr(config, key, value)

    config.exclude_paths = _string_list(data, 'exclude_paths', config_path)

    # Parse simple settings
    config.suppression_keyword = str(data.get('suppression_keyword', 'nosec'))
    min_severity = str(data.get('min_severity', 'LOW')).upper()
    if min_severity not in Severity.__members__:
        logger.warning(f"{config_path}: unknown min_severity '{min_severity}', using LOW")
        min_severity = 'LOW'
    config.min_severity = min_severity

    return config


def _parse_config(config_path: str) -> DbosLintConfig:
    """Parse a .dbos-lint.yml file into a DbosLintConfig."""
    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"{config_path}: invalid YAML: {e}") from e
    logger.debug(f"loaded config from {config_path}")
    return parse_config_data(data, config_path)
