import pgfailover.psycopg as psycopg

from pgfailover.connection import AbstractConnectionProbe, AbstractRecoveryChecker, ConnectionParams
from pgfailover.exceptions import ServiceError, StoreError
from pgfailover.primary import AbstractPrimaryConfigStore
from pgfailover.service import AbstractServiceController
from pgfailover.topology import AbstractTopologyStore, ClusterNode, NodeRole


class SleepException(Exception):
    pass


REPMGR_NODES = [
    ('primary', 'host=10.0.0.1 user=root dbname=vmdb_production', True),
    ('standby', 'host=10.0.0.2 user=root dbname=vmdb_production connect_timeout=2', True),
    ('standby', 'host=10.0.0.3 user=root dbname=vmdb_production', False),
    ('witness', 'host=10.0.0.4 user=repmgr dbname=repmgr', True),
    ('standby', 'user=root dbname=vmdb_production', True),
]


class MockCursor(object):

    def __init__(self, connection):
        self.connection = connection
        self.closed = False
        self.rowcount = 0
        self.results = []

    def execute(self, sql, *params):
        if isinstance(sql, bytes):
            sql = sql.decode('utf-8')
        if sql.startswith('blabla') or self.connection.broken:
            raise psycopg.ProgrammingError()
        elif sql.startswith('SELECT pg_catalog.pg_is_in_recovery()'):
            self.results = [(self.connection.in_recovery,)]
        elif sql.startswith('SELECT type, conninfo, active FROM'):
            self.connection.queries.append(sql)
            self.results = list(self.connection.nodes)
        else:
            self.results = [(None,)]
        self.rowcount = len(self.results)

    def fetchone(self):
        return self.results[0] if self.results else None

    def fetchall(self):
        return self.results

    def __iter__(self):
        for i in self.results:
            yield i

    def __enter__(self):
        return self

    def __exit__(self, *args):
        pass


class MockConnect(object):

    autocommit = False

    def __init__(self, host=None, in_recovery=False, nodes=None, broken=False):
        self.host = host
        self.in_recovery = in_recovery
        self.nodes = REPMGR_NODES if nodes is None else nodes
        self.broken = broken
        self.queries = []
        self.closed = 0

    def cursor(self):
        return MockCursor(self)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        pass

    def close(self):
        self.closed = 1


def psycopg_connect(*args, **kwargs):
    return MockConnect(kwargs.get('host'))


def node(host, role=NodeRole.STANDBY, active=True):
    return ClusterNode(host, 'root', 'vmdb_production', role, active)


class MemoryPrimaryStore(AbstractPrimaryConfigStore):

    def __init__(self, params, events=None, fail_write=False):
        self.params = params
        self.events = events if events is not None else []
        self.fail_write = fail_write
        self.writes = []

    def read(self):
        return self.params

    def write(self, params):
        if self.fail_write:
            raise StoreError('disk full')
        self.events.append(('write', params.host))
        self.writes.append(params)
        self.params = params


class MemoryTopology(AbstractTopologyStore):
    """Cache kept in memory. ``repmgr`` maps the host a connection points to onto what repmgr reports there."""

    def __init__(self, members, repmgr=None, events=None, fail_save=False):
        self.members = members if isinstance(members, Exception) else list(members)
        self.repmgr = repmgr or {}
        self.events = events if events is not None else []
        self.fail_save = fail_save
        self.queried = []

    def query(self, connection):
        self.queried.append(connection.host)
        nodes = self.repmgr.get(connection.host)
        if isinstance(nodes, Exception):
            raise nodes
        return list(nodes or [])

    def all_members(self):
        if isinstance(self.members, Exception):
            raise self.members
        return list(self.members)

    def save(self, members):
        if self.fail_save:
            raise StoreError('read-only file system')
        self.events.append(('save',))
        changed = members != self.members
        self.members = list(members)
        return changed


class MockProbe(AbstractConnectionProbe):
    """Every host in ``reachable`` accepts connections, connections are :class:`MockConnect` objects."""

    def __init__(self, reachable=()):
        self.reachable = set(reachable)
        self.opened = []
        self.closed = []

    def open(self, params):
        params.validate()
        if params.host not in self.reachable:
            return None
        conn = MockConnect(params.host)
        self.opened.append(conn)
        return conn

    def close(self, connection):
        self.closed.append(connection)


class MockRecovery(AbstractRecoveryChecker):

    def __init__(self, in_recovery=None):
        self.in_recovery = in_recovery or {}
        self.checked = []

    def is_in_recovery(self, params):
        self.checked.append(params)
        value = self.in_recovery.get(params.host, False)
        # a list gives the answers of consecutive checks, the last one sticks
        if isinstance(value, list):
            return value.pop(0) if len(value) > 1 else value[0]
        return value


class MockService(AbstractServiceController):

    def __init__(self, running=True, events=None, fail_stop=False, fail_start=False):
        self.running = running
        self.events = events if events is not None else []
        self.fail_stop = fail_stop
        self.fail_start = fail_start
        self.stop_calls = 0
        self.start_calls = 0

    def is_running(self):
        return self.running

    def stop(self):
        self.stop_calls += 1
        if self.fail_stop:
            raise ServiceError('systemctl stop evmserverd exited with code 1')
        self.events.append(('stop',))
        self.running = False

    def start(self):
        self.start_calls += 1
        if self.fail_start:
            raise ServiceError('systemctl start evmserverd exited with code 1')
        self.events.append(('start',))
        self.running = True


PRIMARY = ConnectionParams('10.0.0.1', 'root', 'vmdb_production', 'smartvm')
