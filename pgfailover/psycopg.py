"""Abstraction layer for :mod:`psycopg` module.

This module is able to handle both :mod:`pyscopg2` and :mod:`psycopg`, and it exposes a common interface for both.
:mod:`psycopg2` takes precedence. :mod:`psycopg` will only be used if :mod:`psycopg2` is either absent or older than
``2.7.0``.
"""
from typing import Any, Dict, Optional, TYPE_CHECKING, Union

if TYPE_CHECKING:  # pragma: no cover
    from psycopg import Connection
    from psycopg2 import connection

__all__ = ['connect', 'parse_conninfo', 'quote_ident', 'DatabaseError', 'Error', 'OperationalError',
           'ProgrammingError']

try:
    from psycopg2 import __version__

    from . import MIN_PSYCOPG2, parse_version
    if parse_version(__version__) < MIN_PSYCOPG2:
        raise ImportError
    from psycopg2 import connect as _connect, DatabaseError, Error, OperationalError, ProgrammingError
    from psycopg2.extensions import parse_dsn as _parse_conninfo
except ImportError:
    from psycopg import DatabaseError, Error, OperationalError, ProgrammingError
    # isort: off
    from psycopg import connect as __connect  # pyright: ignore [reportUnknownVariableType]
    from psycopg.conninfo import conninfo_to_dict as _parse_conninfo

    def _connect(dsn: Optional[str] = None, **kwargs: Any) -> 'Connection[Any]':
        """Call :func:`psycopg.connect` with *dsn* and ``**kwargs``.

        :param dsn: DSN to call :func:`psycopg.connect` with.
        :param kwargs: keyword arguments to call :func:`psycopg.connect` with.

        :returns: a connection to the database.
        """
        return __connect(dsn or "", **kwargs)


def connect(*args: Any, **kwargs: Any) -> Union['connection', 'Connection[Any]']:
    """Get a connection to the database.

    .. note::
        The connection will have ``autocommit`` enabled, pgfailover only runs read-only catalog queries.

    :param args: positional arguments to call :func:`~psycopg.connect` function from :mod:`psycopg` module.
    :param kwargs: keyword arguments to call :func:`~psycopg.connect` function from :mod:`psycopg` module.

    :returns: a connection to the database. Can be either a :class:`psycopg.Connection` if using :mod:`psycopg`, or a
        :class:`psycopg2.extensions.connection` if using :mod:`psycopg2`.
    """
    kwargs.setdefault('fallback_application_name', 'pgfailover')
    ret = _connect(*args, **kwargs)
    ret.autocommit = True
    return ret


def quote_ident(value: str) -> str:
    """Quote *value* as a SQL identifier, following the standard double quote escaping rules.

    :param value: value to be quoted.

    :returns: *value* quoted as a SQL identifier.

    :Example:

        >>> quote_ident('repl_nodes')
        '"repl_nodes"'
        >>> quote_ident('a"b')
        '"a""b"'
    """
    return '"{0}"'.format(value.replace('"', '""'))


def parse_conninfo(value: str) -> Optional[Dict[str, str]]:
    """Parse libpq connection string.

    :param value: connection string, either in ``key=value`` or in URI format.

    :returns: a :class:`dict` object, or ``None`` if failed to parse.
    """
    try:
        return _parse_conninfo(value) or None
    except Exception:
        return None
