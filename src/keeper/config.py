import logging
import os
import re

import tomllib

from keeper.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILES = [".keeper.toml", "keeper.toml", "pyproject.toml"]

# Settings holding filesystem paths, anchored at the config file when relative
PATH_KEYS = ("pid_file", "log_file")


def _default_config():
    """Return the default configuration for a Keeper master process.

    This is placed in a separate function because we want to be absolutely
    sure that we are using a copy of the defaults when we manipulate config
    directly in tests.
    """
    return {
        "env": None,
        "pid_file": None,
        "daemon": False,
        "process_name": None,
        "user": None,
        "group": None,
        "bootstrap": [],
        # Forced takeover of a running instance
        "force_attempts": 3,
        "force_grace_period": 5.0,
        "log_level": "INFO",
        "log_file": None,
        "custom": {},
    }


def _merge(base: dict, overrides: dict) -> dict:
    """Overlay ``overrides`` on a copy of ``base``, merging nested tables"""
    merged = dict(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            value = _merge(current, value)
        merged[key] = value

    return merged


class Config(dict):
    """Settings of a Keeper master, as loaded from a dict or a TOML file.

    Unknown top-level keys are ignored. A table named after ``KEEPER_ENV``
    (e.g. ``[production]``) overrides the top-level values, and
    ``${VAR}`` / ``${VAR|default}`` placeholders in strings are replaced from
    the environment.
    """

    ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")

    @classmethod
    def load_from_dict(cls, config: dict | None = None):
        """Load configuration from a dictionary."""
        config = cls._substitute(cls._normalize_config(config or {}))
        return cls(**cls._validate(config))

    @classmethod
    def load_from_path(cls, path: str):
        """Find and load the configuration file governing ``path``.

        ``path`` may be the configuration file itself, or a file/directory
        next to it. The directory and up to 2 parent directories are searched.
        """
        if os.path.isfile(path) and path.endswith(".toml"):
            config_file_name = os.path.abspath(path)
        else:
            config_file_name = cls._find_config_file(path)

        if not config_file_name:
            raise ConfigurationError(
                f"No configuration file found in {os.path.abspath(path)}"
            )

        logger.debug(f"Loading configuration from {config_file_name}")
        try:
            with open(config_file_name, "rb") as f:
                config = tomllib.load(f)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigurationError(
                f"Invalid configuration file {config_file_name}: {exc}"
            )

        # Keeper settings live under [tool.keeper] in pyproject.toml
        if os.path.basename(config_file_name) == "pyproject.toml":
            config = config.get("tool", {}).get("keeper", {})

        config = cls._substitute(cls._normalize_config(config))

        base_dir = os.path.dirname(config_file_name)
        for key in PATH_KEYS:
            if config[key] and not os.path.isabs(config[key]):
                config[key] = os.path.join(base_dir, config[key])

        return cls(**cls._validate(config))

    @classmethod
    def _find_config_file(cls, path: str):
        directory = os.path.abspath(path)
        if not os.path.isdir(directory):
            directory = os.path.dirname(directory)

        # The directory itself and up to 2 parents
        for _ in range(3):
            for name in CONFIG_FILES:
                candidate = os.path.join(directory, name)
                if os.path.exists(candidate):
                    return candidate

            directory = os.path.dirname(directory)

        return None

    @classmethod
    def _normalize_config(cls, config):
        """Combine defaults, known top-level keys and the active environment table"""
        environment = os.environ.get("KEEPER_ENV") or None

        defaults = _default_config()
        known = {key: value for key, value in config.items() if key in defaults}
        finalized = _merge(defaults, known)

        if environment and isinstance(config.get(environment), dict):
            finalized = _merge(finalized, config[environment])
            finalized["env"] = environment

        return finalized

    @classmethod
    def _validate(cls, config):
        bootstrap = config["bootstrap"]
        if isinstance(bootstrap, str) or not isinstance(bootstrap, (list, tuple)):
            raise ConfigurationError(
                f"`bootstrap` must be a list of worker classes, got {bootstrap!r}"
            )

        try:
            config["force_attempts"] = int(config["force_attempts"])
            config["force_grace_period"] = float(config["force_grace_period"])
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid forced takeover setting: {exc}")

        if config["force_attempts"] < 0 or config["force_grace_period"] < 0:
            raise ConfigurationError(
                "`force_attempts` and `force_grace_period` cannot be negative"
            )

        return config

    @classmethod
    def _substitute(cls, value):
        """Resolve environment placeholders in strings, recursing into tables and lists"""
        if isinstance(value, str):
            return cls._replace_env_var(value)
        if isinstance(value, dict):
            return {key: cls._substitute(item) for key, item in value.items()}
        if isinstance(value, list):
            return [cls._substitute(item) for item in value]

        return value

    @classmethod
    def _replace_env_var(cls, value):
        """Replace environment variables in a string.

        Cases:
        1. No placeholder. E.g. "/run/app.pid" - Use as is
        2. A placeholder. E.g. "${PID_FILE}" - Replace with value, fail if unset
        3. A placeholder with a default. E.g. "${RUN_USER|nobody}"
        4. Placeholders mixed with text. E.g. "${RUN_DIR|/run}/app.pid"
        """

        def _lookup(match):
            name, separator, default = match.group(1).partition("|")
            env_value = os.getenv(name, default if separator else None)
            if env_value is None:
                raise ConfigurationError(f"Environment variable {name} is not set")

            return env_value

        return cls.ENV_VAR_PATTERN.sub(_lookup, value)
