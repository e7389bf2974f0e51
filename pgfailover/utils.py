"""Utilitary objects and functions that can be used throughout pgfailover code.

:var logger: logger of this module.
"""
import logging
import os
import shutil
import stat
import tempfile

from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def merge_config(config: Dict[str, Any], overrides: Dict[str, Any]) -> None:
    """Merge *overrides* into *config* in place.

    A ``None`` value removes the key, nested dictionaries are merged key by key and any other value replaces the
    existing one.

    :Example:

        >>> config = {'log': {'level': 'INFO', 'dir': '/var/log'}, 'environment': 'production'}
        >>> merge_config(config, {'log': {'dir': None, 'level': 'DEBUG'}, 'failover': {'attempts': 5}})
        >>> config == {'log': {'level': 'DEBUG'}, 'environment': 'production', 'failover': {'attempts': 5}}
        True
    """
    for name, value in overrides.items():
        if value is None:
            config.pop(name, None)
        elif isinstance(value, dict) and isinstance(config.get(name), dict):
            merge_config(config[name], value)
        else:
            config[name] = value


def parse_bool(value: Any) -> Optional[bool]:
    """Parse ``on/true/yes/t/1`` and ``off/false/no/f/0``, case-insensitive.

    :Example:

        >>> parse_bool('Yes'), parse_bool(0), parse_bool('foo')
        (True, False, None)
    """
    value = str(value).lower()
    if value in ('on', 'true', 'yes', 't', '1'):
        return True
    if value in ('off', 'false', 'no', 'f', '0'):
        return False
    return None


def parse_int(value: Any) -> Optional[int]:
    """Parse *value* as an :class:`int`, a leading zero means octal, as in file modes.

    :Example:

        >>> parse_int(' 0640 '), parse_int('25000000'), parse_int(True), parse_int('nonsense')
        (416, 25000000, None, None)
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    value = str(value).strip()
    try:
        return int(value, 8) if len(value) > 1 and value.startswith('0') else int(value)
    except ValueError:
        return None


def parse_real(value: Any) -> Optional[float]:
    """Parse *value* as a :class:`float`.

    :param value: a number or its string representation.

    :returns: the parsed value, if able to parse. Otherwise returns ``None``.

    :Example:

        >>> parse_real(' +0.5 ')
        0.5

        >>> parse_real(60)
        60.0

        >>> parse_real('1m') is None
        True
    """
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def atomic_write(path: str, content: str) -> None:
    """Replace file *path* with *content* so that readers never observe a partially written file.

    .. note::
        ``<basename>XXXXXX`` is created as a temporary file in the same directory and then renamed to *path*, where
        ``XXXXXX`` is a random suffix. The permissions of the previous file are preserved, if it existed.

    :param path: file to be replaced.
    :param content: new content of the file.

    :raises:
        :exc:`OSError`: if the temporary file could not be written or renamed. The temporary file is removed.
    """
    dirname = os.path.dirname(os.path.abspath(path))
    try:
        mode = stat.S_IMODE(os.stat(path).st_mode)
    except FileNotFoundError:
        mode = None

    fd, tmpfile = tempfile.mkstemp(prefix=os.path.basename(path), dir=dirname)
    try:
        with os.fdopen(fd, 'w') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmpfile, mode)
        shutil.move(tmpfile, path)
    except Exception:
        if os.path.exists(tmpfile):
            try:
                os.remove(tmpfile)
            except Exception:
                logger.error('Can not remove temporary file %s', tmpfile)
        raise
