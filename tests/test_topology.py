import os
import shutil
import tempfile
import unittest

from unittest.mock import Mock, patch

import yaml

from pgfailover.exceptions import StoreError
from pgfailover.topology import ClusterNode, FailoverDatabases, NodeRole, query_repmgr

from . import MockConnect, node


class TestClusterNode(unittest.TestCase):

    def test_from_dict(self):
        self.assertEqual(ClusterNode.from_dict({'host': 'h', 'user': 'u', 'dbname': 'd', 'type': 'primary',
                                                'active': 'yes'}),
                         ClusterNode('h', 'u', 'd', NodeRole.MASTER, True))
        self.assertFalse(ClusterNode.from_dict({'host': 'h', 'type': 'standby'}).active)
        self.assertIsNone(ClusterNode.from_dict({'type': 'standby'}))
        self.assertIsNone(ClusterNode.from_dict({'host': 'h', 'type': 'witness'}))

    def test_params(self):
        member = node('10.0.0.2')
        self.assertEqual(member.params.host, '10.0.0.2')
        self.assertIsNone(member.params.password)
        self.assertFalse(member.is_master)
        self.assertEqual(repr(member.role), 'standby')


class TestQueryRepmgr(unittest.TestCase):

    def test_query_repmgr(self):
        conn = MockConnect()
        self.assertEqual(query_repmgr(conn, 'repmgr', 'nodes'),
                         [node('10.0.0.1', NodeRole.MASTER), node('10.0.0.2'), node('10.0.0.3', active=False)])
        self.assertEqual(conn.queries, ['SELECT type, conninfo, active FROM "repmgr"."nodes"'])

    def test_repmgr3_names(self):
        conn = MockConnect(nodes=[('master', 'host=db1 user=root dbname=vmdb_production', 1)])
        self.assertEqual(query_repmgr(conn, 'repmgr_miq', 'repl_nodes'), [node('db1', NodeRole.MASTER)])
        self.assertEqual(conn.queries, ['SELECT type, conninfo, active FROM "repmgr_miq"."repl_nodes"'])

    def test_unparsable_conninfo(self):
        conn = MockConnect(nodes=[('standby', 'host=db2 user=', True), ('standby', None, True)])
        with patch('pgfailover.psycopg.parse_conninfo', Mock(side_effect=[None, None])):
            self.assertEqual(query_repmgr(conn, 'repmgr', 'nodes'), [])


class TestFailoverDatabases(unittest.TestCase):

    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmp_dir, 'failover_databases.yml')
        self.store = FailoverDatabases(self.path)

    def tearDown(self):
        shutil.rmtree(self.tmp_dir)

    def _write(self, content):
        with open(self.path, 'w') as f:
            f.write(content)

    def test_missing_cache(self):
        self.assertEqual(self.store.all_members(), [])
        self.assertEqual(self.store.active_members(), [])

    def test_refresh(self):
        self.assertTrue(self.store.refresh(MockConnect()))
        with open(self.path) as f:
            self.assertEqual(yaml.safe_load(f), [
                {'host': '10.0.0.1', 'user': 'root', 'dbname': 'vmdb_production', 'type': 'master', 'active': True},
                {'host': '10.0.0.2', 'user': 'root', 'dbname': 'vmdb_production', 'type': 'standby', 'active': True},
                {'host': '10.0.0.3', 'user': 'root', 'dbname': 'vmdb_production', 'type': 'standby',
                 'active': False}])
        self.assertEqual(len(self.store.all_members()), 3)
        self.assertEqual([m.host for m in self.store.active_members()], ['10.0.0.1', '10.0.0.2'])

    def test_refresh_is_idempotent(self):
        self.store.refresh(MockConnect())
        with patch('pgfailover.topology.atomic_write') as mock_write:
            self.assertFalse(self.store.refresh(MockConnect()))
            mock_write.assert_not_called()

    def test_refresh_query_failure(self):
        self.assertRaises(StoreError, self.store.refresh, MockConnect(broken=True))
        self.assertFalse(os.path.exists(self.path))

    @patch('pgfailover.topology.atomic_write', Mock(side_effect=OSError('read-only file system')))
    def test_refresh_write_failure(self):
        self.assertRaises(StoreError, self.store.refresh, MockConnect())

    def test_malformed_cache(self):
        self._write('foo: bar')
        self.assertRaises(StoreError, self.store.all_members)
        self._write('[foo')
        self.assertRaises(StoreError, self.store.active_members)
        self.assertTrue(self.store.save([node('10.0.0.2')]))
        self.assertEqual(self.store.all_members(), [node('10.0.0.2')])

    def test_empty_cache(self):
        self._write('')
        self.assertEqual(self.store.all_members(), [])
        self._write('- foo\n- host: 10.0.0.2\n  type: standby\n  active: true\n- type: witness\n')
        self.assertEqual(self.store.all_members(), [ClusterNode('10.0.0.2', '', '', NodeRole.STANDBY, True)])
