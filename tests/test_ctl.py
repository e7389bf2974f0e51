import json
import os
import shutil
import tempfile
import unittest

from unittest.mock import Mock, patch

import yaml

from click.testing import CliRunner

from pgfailover import psycopg
from pgfailover.connection import ConnectionParams
from pgfailover.ctl import CONFIG_FILE_PATH, ctl, load_config, PgFailoverCtlException
from pgfailover.exceptions import StoreError
from pgfailover.monitor import FailoverOutcome

from . import psycopg_connect

DATABASE_YML = {'production': {'adapter': 'postgresql', 'host': '10.0.0.1', 'username': 'root',
                               'password': 'smartvm', 'database': 'vmdb_production'}}

FAILOVER_DATABASES = [
    {'host': '10.0.0.1', 'user': 'root', 'dbname': 'vmdb_production', 'type': 'master', 'active': True},
    {'host': '10.0.0.2', 'user': 'root', 'dbname': 'vmdb_production', 'type': 'standby', 'active': True},
]


@patch.dict('os.environ', {}, clear=True)
class TestCtl(unittest.TestCase):

    def setUp(self):
        self.runner = CliRunner()
        self.tmp_dir = tempfile.mkdtemp()
        self.database_yml = self._dump('database.yml', DATABASE_YML)
        self.failover_yml = self._dump('failover_databases.yml', FAILOVER_DATABASES)
        self.config_file = self._dump('pgfailover.yml', {'environment': 'production',
                                                         'database_yml': self.database_yml,
                                                         'failover_yml': self.failover_yml})

    def tearDown(self):
        shutil.rmtree(self.tmp_dir)

    def _dump(self, name, data):
        path = os.path.join(self.tmp_dir, name)
        with open(path, 'w') as f:
            yaml.safe_dump(data, f)
        return path

    def invoke(self, *args, **kwargs):
        return self.runner.invoke(ctl, ['-c', self.config_file] + list(args), **kwargs)

    def test_load_config(self):
        self.assertRaises(PgFailoverCtlException, load_config, os.path.join(self.tmp_dir, 'foo.yml'))
        with patch('os.path.exists', Mock(return_value=False)):
            self.assertEqual(load_config(CONFIG_FILE_PATH)['environment'], 'production')
        with open(self.config_file, 'w') as f:
            f.write('failover: [')
        self.assertRaises(PgFailoverCtlException, load_config, self.config_file)

    def test_missing_config_file(self):
        result = self.runner.invoke(ctl, ['-c', os.path.join(self.tmp_dir, 'foo.yml'), 'list'])
        self.assertEqual(result.exit_code, 1)
        self.assertIn('not existing or no read rights', result.output)

    def test_list(self):
        result = self.invoke('list', '-f', 'json')
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(json.loads(result.output), [
            {'Host': '10.0.0.1', 'User': 'root', 'Database': 'vmdb_production', 'Role': 'master', 'Active': True},
            {'Host': '10.0.0.2', 'User': 'root', 'Database': 'vmdb_production', 'Role': 'standby', 'Active': True}])

        result = self.invoke('list')
        self.assertEqual(result.exit_code, 0)
        self.assertIn('10.0.0.2', result.output)

        result = self.invoke('list', '-f', 'tsv')
        self.assertEqual(result.output.splitlines()[0], 'Host\tUser\tDatabase\tRole\tActive')

    def test_list_unreadable_cache(self):
        with open(self.failover_yml, 'w') as f:
            f.write('[foo')
        result = self.invoke('list')
        self.assertEqual(result.exit_code, 1)
        self.assertIn('failed to read', result.output)

    def test_show_primary(self):
        result = self.invoke('show-primary', '-f', 'yaml')
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(yaml.safe_load(result.output),
                         [{'Host': '10.0.0.1', 'User': 'root', 'Database': 'vmdb_production'}])
        self.assertNotIn('smartvm', result.output)

        os.remove(self.database_yml)
        self.assertEqual(self.invoke('show-primary').exit_code, 1)

    @patch('pgfailover.psycopg._connect', psycopg_connect)
    def test_refresh(self):
        result = self.invoke('refresh')
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(result.output.strip(), 'Topology cache updated from 10.0.0.1: 3 member(s)')

        result = self.invoke('refresh')
        self.assertEqual(result.output.strip(), 'Topology cache is up to date from 10.0.0.1: 3 member(s)')

        with patch('pgfailover.topology.FailoverDatabases.save', Mock(side_effect=StoreError('read-only'))):
            result = self.invoke('refresh')
        self.assertEqual(result.exit_code, 1)
        self.assertIn('read-only', result.output)

    @patch('pgfailover.psycopg._connect', Mock(side_effect=psycopg.OperationalError('connection refused')))
    def test_refresh_unreachable(self):
        result = self.invoke('refresh')
        self.assertEqual(result.exit_code, 1)
        self.assertIn('Primary 10.0.0.1 is not reachable', result.output)

    def test_check(self):
        with patch('pgfailover.__main__.run_check', Mock(return_value=FailoverOutcome.healthy())) as mock_check:
            result = self.invoke('check', input='n')
            self.assertEqual(result.exit_code, 1)
            mock_check.assert_not_called()

            result = self.invoke('check', input='y')
            self.assertEqual(result.exit_code, 0, result.output)
            self.assertIn('Check finished: healthy', result.output)

        new_primary = ConnectionParams('10.0.0.2', 'root', 'vmdb_production', 'smartvm')
        with patch('pgfailover.__main__.run_check', Mock(return_value=FailoverOutcome.recovered(new_primary))):
            result = self.invoke('check', '--force')
            self.assertEqual(result.exit_code, 0, result.output)
            self.assertIn('recovered (10.0.0.2)', result.output)

        with patch('pgfailover.__main__.run_check', Mock(return_value=FailoverOutcome.failed())):
            result = self.invoke('check', '--force')
            self.assertEqual(result.exit_code, 1)
            self.assertIn('No new primary could be confirmed', result.output)

        with patch('pgfailover.__main__.run_check', Mock(side_effect=StoreError('disk full'))):
            result = self.invoke('check', '--force')
            self.assertEqual(result.exit_code, 1)
            self.assertIn('disk full', result.output)

    def test_invalid_policy(self):
        with open(self.config_file, 'a') as f:
            f.write('failover: {attempts: 0}\n')
        result = self.invoke('list')
        self.assertEqual(result.exit_code, 1)
        self.assertIn('failover.attempts', result.output)

    def test_invalid_section(self):
        for section, error in (('failover: 5', 'failover must be a dict'), ('repmgr: x', 'repmgr must be a dict')):
            self.config_file = self._dump('pgfailover.yml', {'database_yml': self.database_yml,
                                                             'failover_yml': self.failover_yml})
            with open(self.config_file, 'a') as f:
                f.write(section + '\n')
            result = self.invoke('show-primary')
            self.assertEqual(result.exit_code, 1)
            self.assertIn(error, result.output)

    def test_version(self):
        result = self.invoke('version')
        self.assertEqual(result.exit_code, 0)
        self.assertIn('pgfailoverctl version', result.output)
