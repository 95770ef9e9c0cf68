"""Configuration file support for toolgate.

Loads settings from .toolgate.toml (project-level) or ~/.toolgate.toml
(user-level). CLI flags override config file values. Config file overrides
defaults.

PolicyStore holds the live PolicyConfig snapshot. A reload builds a new
snapshot and swaps it in whole; decisions already running keep the one
they started with.
"""

import os
import tomllib
from pathlib import Path

from core.tool_policy import (
    BLOCK_DESTRUCTIVE, DEFAULT_BLOCKED_COMMANDS, DEFAULT_PROFILE, PolicyConfig,
)


class ConfigError(ValueError):
    """Raised when a config file cannot be parsed or holds invalid values."""


# Default configuration values (same as CLI defaults)
DEFAULTS = {
    "workspace": ".",
    "policy": BLOCK_DESTRUCTIVE,
    "allowed_commands": [],
    "blocked_commands": list(DEFAULT_BLOCKED_COMMANDS),
    "tool_profile": DEFAULT_PROFILE,
    "allowed_tools": [],
    "blocked_tools": [],
    "allow_absolute_paths": False,
    "max_pattern_length": 500,
    "loop_history": 50,
    "loop_min_history": 10,
    "loop_window": 20,
    "rate_limit": False,
    "rate_limit_per_minute": 20,
    "audit_dir": None,
    "tool_timeout": 30,
}

# Config file search order (first found wins)
CONFIG_FILENAMES = [".toolgate.toml", "toolgate.toml"]
CONFIG_SEARCH_DIRS = [
    ".",                          # Current directory (project-level)
    str(Path.home()),             # Home directory (user-level)
]

_LIST_KEYS = ("allowed_commands", "blocked_commands", "allowed_tools", "blocked_tools")
_INT_KEYS = ("max_pattern_length", "loop_history", "loop_min_history", "loop_window",
             "rate_limit_per_minute", "tool_timeout")
_BOOL_KEYS = ("allow_absolute_paths", "rate_limit")


def find_config_file() -> str | None:
    """Find the first config file in the search path."""
    for directory in CONFIG_SEARCH_DIRS:
        for filename in CONFIG_FILENAMES:
            path = os.path.join(directory, filename)
            if os.path.isfile(path):
                return path
    return None


def _check_types(config: dict, path: str) -> None:
    for key in _LIST_KEYS:
        value = config[key]
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ConfigError(f"{path}: '{key}' must be a list of strings")
    for key in _INT_KEYS:
        value = config[key]
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ConfigError(f"{path}: '{key}' must be a positive integer")
    for key in _BOOL_KEYS:
        if not isinstance(config[key], bool):
            raise ConfigError(f"{path}: '{key}' must be true or false")


def load_config(config_path: str = None) -> dict:
    """Load configuration from file.

    Args:
        config_path: Explicit path to config file. If None, searches default locations.

    Returns:
        Dict of configuration values. Missing keys use DEFAULTS.

    Raises:
        ConfigError: The file is not valid TOML, or a known key has the wrong type.
    """
    config = {k: (list(v) if isinstance(v, list) else v) for k, v in DEFAULTS.items()}

    path = config_path or find_config_file()
    if not path:
        return config
    if not os.path.isfile(path):
        if config_path:
            raise ConfigError(f"Config file not found: {config_path}")
        return config

    try:
        with open(path, "rb") as f:
            file_config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e

    # Normalize key names (TOML uses - or _, CLI uses _)
    for key, value in file_config.items():
        norm_key = key.replace("-", "_")
        if norm_key in config:
            config[norm_key] = value

    _check_types(config, path)
    config["_config_file"] = path
    return config


def merge_cli_args(config: dict, args) -> dict:
    """Merge CLI arguments over config file values.

    CLI args that are None or False (defaults) don't override config.
    Explicitly set CLI args always win.
    """
    result = dict(config)

    # Map argparse attribute names to config keys
    mappings = {
        "workspace": "workspace",
        "policy": "policy",
        "profile": "tool_profile",
        "allow_absolute": "allow_absolute_paths",
        "max_length": "max_pattern_length",
        "audit_dir": "audit_dir",
    }

    for arg_name, config_key in mappings.items():
        cli_value = getattr(args, arg_name, None)
        if cli_value is None:
            continue
        # For boolean flags: only override if True (explicitly set)
        if isinstance(cli_value, bool) and not cli_value:
            continue
        result[config_key] = cli_value

    return result


def policy_from_config(config: dict) -> PolicyConfig:
    """Build an immutable PolicyConfig from a loaded config dict.

    Raises:
        ConfigError: Unknown policy mode or tool profile.
    """
    try:
        return PolicyConfig(
            mode=config.get("policy", BLOCK_DESTRUCTIVE),
            allowed=config.get("allowed_commands", ()),
            blocked=config.get("blocked_commands", DEFAULT_BLOCKED_COMMANDS),
            profile=config.get("tool_profile", DEFAULT_PROFILE),
            allowed_tools=config.get("allowed_tools", ()),
            blocked_tools=config.get("blocked_tools", ()),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(str(e)) from e


class PolicyStore:
    """Holder of the current PolicyConfig snapshot."""

    def __init__(self, snapshot: PolicyConfig = None, config_path: str = None, audit=None):
        self._snapshot = snapshot if snapshot is not None else PolicyConfig()
        self.config_path = config_path
        self.audit = audit

    @property
    def current(self) -> PolicyConfig:
        return self._snapshot

    def replace(self, snapshot: PolicyConfig) -> PolicyConfig:
        """Swap in a new snapshot. Returns the previous one."""
        if not isinstance(snapshot, PolicyConfig):
            raise TypeError(f"expected PolicyConfig, got {type(snapshot).__name__}")
        previous, self._snapshot = self._snapshot, snapshot
        return previous

    def reload(self, path: str = None) -> PolicyConfig:
        """Re-read the config file and replace the snapshot.

        On ConfigError the current snapshot stays in place and the error
        propagates.
        """
        path = path or self.config_path
        try:
            snapshot = policy_from_config(load_config(path))
        except ConfigError as e:
            if self.audit:
                self.audit.error("config_reload", str(e))
            raise
        self.replace(snapshot)
        if self.audit:
            self.audit.config_reload(path or "", snapshot.mode, snapshot.profile)
        return snapshot

    @classmethod
    def from_config(cls, config: dict, audit=None) -> "PolicyStore":
        return cls(policy_from_config(config), config.get("_config_file"), audit)


def generate_sample_config() -> str:
    """Generate a sample .toolgate.toml config file."""
    return '''# toolgate configuration
# Place this file at .toolgate.toml (project) or ~/.toolgate.toml (user)

# Directory every file tool is confined to
workspace = "."

# Command policy: "allowlist-only", "block-destructive" or "allow-all"
policy = "block-destructive"

# Only consulted in allowlist-only mode. Matched token by token.
# allowed_commands = ["ls", "git status", "git diff", "npm test"]

# Substrings refused in every mode
blocked_commands = ["rm -rf /", "dd if=", ":(){:|:&};:", "curl | sh", "wget | sh", "mkfs", "fdisk", "> /dev/sda"]

# Tool profile: "minimal", "coding", "messaging" or "full"
tool_profile = "coding"
# allowed_tools = ["read_file", "grep"]
# blocked_tools = ["web"]

# Guards
allow_absolute_paths = false
max_pattern_length = 500

# Loop detection
loop_history = 50
loop_min_history = 10
loop_window = 20

# Per-user rate limit
rate_limit = false
rate_limit_per_minute = 20

# Audit log (JSONL). Omit to disable.
# audit_dir = "."

# Seconds before a tool execution is abandoned
tool_timeout = 30
'''
