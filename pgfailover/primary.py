"""The persisted "which host is primary" record consumed by the application.

The application reads its database connection from ``database.yml``, a YAML file with one section per environment:

.. code-block:: yaml

    production:
      adapter: postgresql
      host: 203.0.113.1
      username: root
      password: secret
      database: vmdb_production
"""
import abc
import logging
import shutil
import time

from typing import Any, cast, Dict

import yaml

from .connection import ConnectionParams
from .exceptions import ConfigParseError, StoreError
from .utils import atomic_write

logger = logging.getLogger(__name__)


class AbstractPrimaryConfigStore(abc.ABC):
    """Read and atomically rewrite the application's primary connection."""

    @abc.abstractmethod
    def read(self) -> ConnectionParams:
        """Read the configured primary.

        :raises:
            :exc:`~pgfailover.exceptions.ConfigParseError`: if the record is missing or malformed.
        """

    @abc.abstractmethod
    def write(self, params: ConnectionParams) -> None:
        """Point the application to *params*.

        No partially written record is ever observable by the application.

        :raises:
            :exc:`~pgfailover.exceptions.StoreError`: if the record could not be written.
        """


class DatabaseYml(AbstractPrimaryConfigStore):
    """Primary connection kept in the ``database.yml`` file of the application.

    :ivar path: path to ``database.yml``.
    :ivar environment: name of the section used by the application, e.g. ``production``.
    """

    BACKUP_TIME_FORMAT = '%d-%B-%Y_%H.%M.%S'

    def __init__(self, path: str, environment: str) -> None:
        self.path = path
        self.environment = environment

    def _load(self) -> Dict[str, Any]:
        try:
            with open(self.path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigParseError('failed to read {0}: {1}'.format(self.path, e)) from e
        if not isinstance(data, dict):
            raise ConfigParseError('{0} does not contain a dict'.format(self.path))
        return cast(Dict[str, Any], data)

    def _section(self, data: Dict[str, Any]) -> Dict[str, Any]:
        section = data.get(self.environment)
        if not isinstance(section, dict):
            raise ConfigParseError('{0} has no "{1}" section'.format(self.path, self.environment))
        return cast(Dict[str, Any], section)

    def read(self) -> ConnectionParams:
        section = self._section(self._load())
        if not section.get('host'):
            raise ConfigParseError('"{0}" section of {1} has no host'.format(self.environment, self.path))
        password = section.get('password')
        return ConnectionParams(str(section['host']), str(section.get('username') or 'root'),
                                str(section.get('database') or 'vmdb_' + self.environment),
                                None if password is None else str(password))

    def backup(self) -> str:
        """Copy the current file to ``<path>_<timestamp>``.

        :returns: path of the backup.
        """
        backup = '{0}_{1}'.format(self.path, time.strftime(self.BACKUP_TIME_FORMAT))
        shutil.copy2(self.path, backup)
        return backup

    def write(self, params: ConnectionParams) -> None:
        try:
            data = self._load()
            section = self._section(data)
        except ConfigParseError as e:
            raise StoreError(e.value) from e

        section.update(host=params.host, username=params.user, database=params.dbname)
        if params.password is not None:
            section['password'] = params.password

        try:
            logger.info('Saved a backup of %s to %s', self.path, self.backup())
            atomic_write(self.path, yaml.safe_dump(data, default_flow_style=False))
        except Exception as e:
            raise StoreError('failed to write {0}: {1}'.format(self.path, e)) from e
        logger.info('Updated %s: %s', self.path, params)
