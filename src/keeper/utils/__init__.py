"""Utility module for Keeper

Definitions/declaractions in this module should be independent of other modules,
to the maximum extent possible.
"""

from __future__ import annotations

from importlib import metadata


def get_version() -> str:
    return metadata.version("keeper")


def fully_qualified_name(cls) -> str:
    """Return Fully Qualified name along with module"""
    return ".".join([cls.__module__, cls.__qualname__])


fqn = fully_qualified_name


def convert_str_to_bool(value) -> bool:
    """Normalize a boolean-ish configuration value.

    Only the string ``"true"`` (in any case) is truthy among strings, so that
    values like ``"false"`` or ``"0"`` coming from config files do not
    accidentally enable a flag.
    """
    if isinstance(value, str):
        return value.strip().lower() == "true"

    return bool(value)


__all__ = [
    "convert_str_to_bool",
    "fully_qualified_name",
    "fqn",
    "get_version",
]
