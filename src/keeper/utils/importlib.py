"""Resolution of worker classes named in configuration"""

from importlib import import_module

from keeper.exceptions import ConfigurationError


def import_from_string(path):
    """Import an attribute given as ``package.module.Name`` or ``package.module:Name``"""
    if ":" in path:
        module_path, _, attr = path.partition(":")
    else:
        module_path, _, attr = path.rpartition(".")

    if not module_path or not attr:
        raise ImportError(f"Could not import {path}. Expected a dotted path to a class")

    try:
        module = import_module(module_path)
    except ImportError as e:
        raise ImportError(f"Could not import {path}. {e.__class__.__name__}: {e}")

    try:
        return getattr(module, attr)
    except AttributeError as e:
        raise ImportError(f"Could not import {path}. {e.__class__.__name__}: {e}")


def load_class(entry, base):
    """Return ``entry`` as a subclass of ``base``, importing it if given as a string.

    Raises:
        ConfigurationError: ``entry`` cannot be imported, or is not a subclass
            of ``base``.
    """
    cls = entry
    if isinstance(entry, str):
        try:
            cls = import_from_string(entry)
        except ImportError as exc:
            raise ConfigurationError(str(exc))

    if not (isinstance(cls, type) and issubclass(cls, base)):
        raise ConfigurationError(f"`{entry}` is not a subclass of {base.__name__}")

    return cls
