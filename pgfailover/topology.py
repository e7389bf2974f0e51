"""Cluster topology as reported by repmgr and its persisted cache.

The cache (``failover_databases.yml``) is refreshed every time the primary is found healthy, so that during a failover
the list of candidates is available even though the primary, and with it the authoritative repmgr metadata, is gone.
"""
import abc
import logging
import os

from enum import Enum
from typing import Any, cast, Dict, List, NamedTuple, Optional

import yaml

from . import psycopg
from .connection import ConnectionParams
from .exceptions import StoreError
from .utils import atomic_write, parse_bool

logger = logging.getLogger(__name__)


class NodeRole(str, Enum):
    """Role of a cluster member as known to repmgr."""

    MASTER = 'master'
    STANDBY = 'standby'

    def __repr__(self) -> str:
        """Get an "official" string representation of a :class:`NodeRole` member."""
        return self.value

    def __str__(self) -> str:
        """Get a string representation of a :class:`NodeRole` member."""
        return self.__repr__()

    @classmethod
    def from_repmgr(cls, node_type: Any) -> Optional['NodeRole']:
        """Map a repmgr node type to a :class:`NodeRole`.

        :param node_type: value of the ``type`` column. repmgr 4 and newer call the master ``primary``.

        :returns: the role, or ``None`` for node types that never take part in a failover (``witness``, ``bdr``).

        :Example:

            >>> NodeRole.from_repmgr('primary')
            master
            >>> NodeRole.from_repmgr(' Standby ')
            standby
            >>> NodeRole.from_repmgr('witness') is None
            True
        """
        node_type = str(node_type).strip().lower()
        if node_type in ('master', 'primary'):
            return cls.MASTER
        if node_type == 'standby':
            return cls.STANDBY
        return None


class ClusterNode(NamedTuple):
    """Immutable object (namedtuple) which represents a single member of the cluster.

    :ivar host: host of the member.
    :ivar user: user name to connect with.
    :ivar dbname: database to connect to.
    :ivar role: :class:`NodeRole` of the member.
    :ivar active: ``False`` if repmgr excludes the member from candidacy.
    """

    host: str
    user: str
    dbname: str
    role: NodeRole
    active: bool

    @property
    def params(self) -> ConnectionParams:
        """Connection parameters of this member."""
        return ConnectionParams(self.host, self.user, self.dbname)

    @property
    def is_master(self) -> bool:
        return self.role == NodeRole.MASTER

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the member as a cache record.

        :Example:

            >>> ClusterNode('h', 'u', 'd', NodeRole.STANDBY, True).to_dict() == \
                {'host': 'h', 'user': 'u', 'dbname': 'd', 'type': 'standby', 'active': True}
            True
        """
        return {'host': self.host, 'user': self.user, 'dbname': self.dbname,
                'type': self.role.value, 'active': self.active}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional['ClusterNode']:
        """Build a :class:`ClusterNode` from a cache record.

        :param data: record with ``host``, ``user``, ``dbname``, ``type`` and ``active`` keys.

        :returns: the member, or ``None`` if the record has no host or an unknown type.
        """
        role = NodeRole.from_repmgr(data.get('type'))
        host = data.get('host')
        if role is None or not host:
            return None
        return cls(str(host), str(data.get('user') or ''), str(data.get('dbname') or ''),
                   role, parse_bool(data.get('active')) is True)


def query_repmgr(connection: Any, schema: str, table: str) -> List[ClusterNode]:
    """Read cluster membership from the repmgr metadata through *connection*.

    .. note::
        repmgr metadata is replicated to every member, hence *connection* may point to any live member.

    :param connection: open connection to a cluster member.
    :param schema: name of the repmgr schema, e.g. ``repmgr`` or ``repmgr_<cluster>`` for repmgr 3.
    :param table: name of the nodes table, ``nodes`` for repmgr 4 and newer, ``repl_nodes`` for repmgr 3.

    :returns: list of members in the order returned by the query.

    :raises:
        :exc:`~pgfailover.psycopg.Error`: if the query fails.
    """
    sql = 'SELECT type, conninfo, active FROM {0}.{1}'.format(psycopg.quote_ident(schema), psycopg.quote_ident(table))
    with connection.cursor() as cur:
        cur.execute(sql)
        rows = cur.fetchall()

    ret: List[ClusterNode] = []
    for node_type, conninfo, active in rows:
        role = NodeRole.from_repmgr(node_type)
        if role is None:
            logger.debug('Ignoring repmgr node of type %s', node_type)
            continue
        info = psycopg.parse_conninfo(conninfo or '')
        if not info or not info.get('host'):
            logger.warning('Ignoring repmgr node with unusable conninfo: %s', conninfo)
            continue
        ret.append(ClusterNode(info['host'], info.get('user', ''), info.get('dbname', ''), role, bool(active)))
    return ret


class AbstractTopologyStore(abc.ABC):
    """Persisted cache of cluster members and the live repmgr query that refreshes it."""

    @abc.abstractmethod
    def query(self, connection: Any) -> List[ClusterNode]:
        """Query the live cluster topology through *connection*.

        :raises:
            :exc:`~pgfailover.psycopg.Error`: if the query fails.
        """

    @abc.abstractmethod
    def all_members(self) -> List[ClusterNode]:
        """Read all members from the cache, no I/O to the cluster.

        :raises:
            :exc:`~pgfailover.exceptions.StoreError`: if the cache can't be read.
        """

    @abc.abstractmethod
    def save(self, members: List[ClusterNode]) -> bool:
        """Persist *members* in the cache.

        :returns: ``True`` if the cache was changed.

        :raises:
            :exc:`~pgfailover.exceptions.StoreError`: if the cache can't be written.
        """

    def active_members(self) -> List[ClusterNode]:
        """Members of the cache that are currently eligible for candidacy."""
        return [m for m in self.all_members() if m.active]

    def refresh(self, connection: Any) -> bool:
        """Re-query the live topology through *connection* and persist it.

        :returns: ``True`` if the cache was changed.

        :raises:
            :exc:`~pgfailover.exceptions.StoreError`: if the topology can't be queried or persisted.
        """
        try:
            members = self.query(connection)
        except psycopg.Error as e:
            raise StoreError('failed to query repmgr: {0}'.format(str(e).strip())) from e
        return self.save(members)


class FailoverDatabases(AbstractTopologyStore):
    """Topology cache kept in a YAML file.

    :ivar path: the cache file.
    :ivar schema: name of the repmgr schema.
    :ivar table: name of the repmgr nodes table.
    """

    def __init__(self, path: str, schema: str = 'repmgr', table: str = 'nodes') -> None:
        self.path = path
        self.schema = schema
        self.table = table

    def query(self, connection: Any) -> List[ClusterNode]:
        return query_repmgr(connection, self.schema, self.table)

    def _load(self) -> List[Dict[str, Any]]:
        if not os.path.exists(self.path):
            logger.warning('Topology cache %s does not exist yet', self.path)
            return []
        try:
            with open(self.path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise StoreError('failed to read {0}: {1}'.format(self.path, e)) from e
        if data is None:
            return []
        if not isinstance(data, list):
            raise StoreError('{0} does not contain a list'.format(self.path))
        return [cast(Dict[str, Any], r) for r in cast(List[Any], data) if isinstance(r, dict)]

    def all_members(self) -> List[ClusterNode]:
        return [m for m in map(ClusterNode.from_dict, self._load()) if m]

    def save(self, members: List[ClusterNode]) -> bool:
        records = [m.to_dict() for m in members]
        try:
            if os.path.exists(self.path) and self._load() == records:
                logger.debug('Topology cache %s is up to date', self.path)
                return False
        except StoreError as e:
            logger.warning('Overwriting unreadable topology cache: %s', e)

        try:
            atomic_write(self.path, yaml.safe_dump(records, default_flow_style=False))
        except Exception as e:
            raise StoreError('failed to write {0}: {1}'.format(self.path, e)) from e
        logger.info('Updated topology cache %s: %s', self.path,
                    ', '.join('{0}({1}{2})'.format(m.host, m.role, '' if m.active else ', inactive') for m in members))
        return True
