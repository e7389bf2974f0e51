import unittest

from unittest.mock import Mock, patch

import pgfailover.psycopg as psycopg

from pgfailover.connection import ConnectionParams, ConnectionProbe, RecoveryChecker
from pgfailover.exceptions import ConnectionParamsError

from . import MockConnect, MockProbe, psycopg_connect


class TestConnectionParams(unittest.TestCase):

    def test_conn_kwargs(self):
        self.assertEqual(ConnectionParams('h', 'u', 'd', 'p').conn_kwargs(),
                         {'host': 'h', 'user': 'u', 'dbname': 'd', 'password': 'p'})
        self.assertEqual(str(ConnectionParams('h', 'u', 'd', 'p')), 'host=h user=u dbname=d')

    def test_validate(self):
        ConnectionParams('h', 'u', 'd').validate()
        self.assertRaises(ConnectionParamsError, ConnectionParams('', 'u', 'd').validate)
        self.assertRaises(ConnectionParamsError, ConnectionParams('h', ' ', 'd').validate)
        self.assertRaises(ConnectionParamsError, ConnectionParams('h', 'u', None).validate)


@patch('pgfailover.psycopg._connect', psycopg_connect)
class TestConnectionProbe(unittest.TestCase):

    def setUp(self):
        self.probe = ConnectionProbe(connect_timeout=2)

    def test_open(self):
        conn = self.probe.open(ConnectionParams('10.0.0.1', 'root', 'vmdb_production'))
        self.assertEqual(conn.host, '10.0.0.1')
        self.assertTrue(conn.autocommit)

    def test_open_passes_arguments(self):
        with patch('pgfailover.psycopg._connect', Mock(return_value=MockConnect())) as mock_connect:
            self.probe.open(ConnectionParams('10.0.0.1', 'root', 'vmdb_production', 'smartvm'))
            mock_connect.assert_called_once_with(host='10.0.0.1', user='root', dbname='vmdb_production',
                                                 password='smartvm', connect_timeout=2,
                                                 fallback_application_name='pgfailover')

    def test_unreachable(self):
        with patch('pgfailover.psycopg._connect', Mock(side_effect=psycopg.OperationalError('connection refused'))):
            self.assertIsNone(self.probe.open(ConnectionParams('10.0.0.1', 'root', 'vmdb_production')))

    def test_malformed_params(self):
        self.assertRaises(ConnectionParamsError, self.probe.open, ConnectionParams('', 'root', 'vmdb_production'))

    def test_close(self):
        conn = MockConnect()
        self.probe.close(conn)
        self.assertEqual(conn.closed, 1)
        self.probe.close(Mock(close=Mock(side_effect=psycopg.OperationalError)))

    def test_connection_context(self):
        with self.probe.connection(ConnectionParams('10.0.0.1', 'root', 'vmdb_production')) as conn:
            self.assertEqual(conn.closed, 0)
        self.assertEqual(conn.closed, 1)

        conn = MockConnect()
        with patch.object(ConnectionProbe, 'open', Mock(return_value=conn)):
            with self.assertRaises(ZeroDivisionError):
                with self.probe.connection(ConnectionParams('10.0.0.1', 'root', 'vmdb_production')):
                    1 / 0
        self.assertEqual(conn.closed, 1)


class TestRecoveryChecker(unittest.TestCase):

    def setUp(self):
        self.probe = MockProbe(reachable=['10.0.0.1', '10.0.0.2'])
        self.checker = RecoveryChecker(self.probe)
        self.params = ConnectionParams('10.0.0.2', 'root', 'vmdb_production')

    def test_is_in_recovery(self):
        with patch.object(MockProbe, 'open', Mock(return_value=MockConnect('10.0.0.2', in_recovery=True))):
            self.assertTrue(self.checker.is_in_recovery(self.params))
        self.assertFalse(self.checker.is_in_recovery(self.params))
        self.assertEqual(len(self.probe.closed), 2)

    def test_unreachable(self):
        self.assertTrue(self.checker.is_in_recovery(ConnectionParams('10.0.0.3', 'root', 'vmdb_production')))

    def test_query_failure(self):
        with patch.object(MockProbe, 'open', Mock(return_value=MockConnect('10.0.0.2', broken=True))):
            self.assertTrue(self.checker.is_in_recovery(self.params))
        self.assertEqual(len(self.probe.closed), 1)
