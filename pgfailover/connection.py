"""Connections to the members of the cluster.

:class:`AbstractConnectionProbe` opens connections without raising for unreachable nodes: an unreachable node is an
expected signal for the failover state machine and is reported as ``None``. :class:`AbstractRecoveryChecker` tells
whether a node is still a standby.
"""
import abc
import logging

from contextlib import contextmanager
from typing import Any, Dict, Iterator, NamedTuple, Optional

from . import psycopg
from .exceptions import ConnectionParamsError

logger = logging.getLogger(__name__)


class ConnectionParams(NamedTuple):
    """Immutable object (namedtuple) which identifies a node to probe or connect to.

    :ivar host: host name or address of the node.
    :ivar user: user name to connect with.
    :ivar dbname: database to connect to.
    :ivar password: optional password, ``None`` means that libpq resolves it (``.pgpass``, trust, ...).
    """

    host: str
    user: str
    dbname: str
    password: Optional[str] = None

    def conn_kwargs(self) -> Dict[str, Any]:
        """Give keyword arguments used for :func:`~pgfailover.psycopg.connect`.

        :returns: :class:`dict` with ``host``, ``user``, ``dbname`` and, if set, ``password``.

        :Example:

            >>> ConnectionParams('h', 'u', 'd').conn_kwargs() == {'host': 'h', 'user': 'u', 'dbname': 'd'}
            True
        """
        ret = {'host': self.host, 'user': self.user, 'dbname': self.dbname}
        if self.password is not None:
            ret['password'] = self.password
        return ret

    def validate(self) -> None:
        """Make sure that the parameters can be used to open a connection.

        :raises:
            :exc:`~pgfailover.exceptions.ConnectionParamsError`: if any of ``host``, ``user`` or ``dbname`` is empty.
        """
        for name in ('host', 'user', 'dbname'):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ConnectionParamsError('malformed connection parameters: {0}={1!r}'.format(name, value))

    def __str__(self) -> str:
        return 'host={0} user={1} dbname={2}'.format(self.host, self.user, self.dbname)


class AbstractConnectionProbe(abc.ABC):
    """Open and close database connections to cluster members."""

    @abc.abstractmethod
    def open(self, params: ConnectionParams) -> Optional[Any]:
        """Open a connection to the node identified by *params*.

        :param params: the node to connect to.

        :returns: an open connection, or ``None`` if the node can't be reached.

        :raises:
            :exc:`~pgfailover.exceptions.ConnectionParamsError`: if *params* are malformed.
        """

    @abc.abstractmethod
    def close(self, connection: Any) -> None:
        """Release *connection*. Never raises."""

    @contextmanager
    def connection(self, params: ConnectionParams) -> Iterator[Optional[Any]]:
        """Scope a connection to the ``with`` block.

        The connection, if it was opened, is closed on every exit path of the block.

        :param params: the node to connect to.

        :yields: an open connection or ``None`` if the node can't be reached.
        """
        conn = self.open(params)
        try:
            yield conn
        finally:
            if conn is not None:
                self.close(conn)


class ConnectionProbe(AbstractConnectionProbe):
    """Open connections with :func:`pgfailover.psycopg.connect`.

    :ivar connect_timeout: maximum wait for a connection, in seconds.
    """

    def __init__(self, connect_timeout: int = 5) -> None:
        self.connect_timeout = connect_timeout

    def open(self, params: ConnectionParams) -> Optional[Any]:
        params.validate()
        try:
            return psycopg.connect(connect_timeout=self.connect_timeout, **params.conn_kwargs())
        except psycopg.OperationalError as e:
            logger.info('Failed to connect to %s: %s', params, str(e).strip())
        return None

    def close(self, connection: Any) -> None:
        try:
            connection.close()
        except Exception as e:
            logger.debug('Failed to close connection: %r', e)


class AbstractRecoveryChecker(abc.ABC):
    """Ask a node whether it is still a standby."""

    @abc.abstractmethod
    def is_in_recovery(self, params: ConnectionParams) -> bool:
        """Check if the node identified by *params* is in recovery.

        :param params: the node to check.

        :returns: ``True`` if the node is still replaying WAL as a standby, or if its state can't be determined.
        """


class RecoveryChecker(AbstractRecoveryChecker):
    """Run ``pg_is_in_recovery()`` on the node directly.

    :ivar probe: used to open connections to the nodes.
    """

    def __init__(self, probe: AbstractConnectionProbe) -> None:
        self.probe = probe

    def is_in_recovery(self, params: ConnectionParams) -> bool:
        with self.probe.connection(params) as conn:
            if conn is None:
                logger.info('Can not check recovery state of %s, node is not reachable', params.host)
                return True
            try:
                with conn.cursor() as cur:
                    cur.execute('SELECT pg_catalog.pg_is_in_recovery()')
                    row = cur.fetchone()
            except psycopg.Error as e:
                logger.warning('Failed to check recovery state of %s: %r', params.host, e)
                return True
            return not row or bool(row[0])
