"""Facilities related to pgfailover configuration."""
import logging
import os
import re

from collections import defaultdict
from copy import deepcopy
from typing import Any, Callable, cast, Dict, List, Optional, TYPE_CHECKING

import yaml

from . import PGFAILOVER_ENV_PREFIX
from .exceptions import ConfigParseError
from .utils import merge_config, parse_int, parse_real

logger = logging.getLogger(__name__)


def default_validator(conf: Dict[str, Any]) -> List[str]:
    """Ensure *conf* is not empty and that mandatory settings have sane values.

    Designed to be used as default validator for :class:`Config` objects, if no specific validator is provided.

    :param conf: local configuration to be validated, before defaults are applied.

    :returns: list of issues found while validating the configuration, after merging it with default values.

    :raises:
        :class:`ConfigParseError`: if *conf* is empty.
    """
    if not conf:
        raise ConfigParseError("Config is empty.")

    config = Config.get_default_config()
    merge_config(config, deepcopy(conf))

    errors: List[str] = []
    for name in ('environment', 'database_yml', 'failover_yml'):
        if not isinstance(config.get(name), str) or not config[name]:
            errors.append('{0} is not set'.format(name))

    failover = config.get('failover')
    if not isinstance(failover, dict):
        errors.append('failover must be a dict')
    else:
        attempts = parse_int(cast(Dict[str, Any], failover).get('attempts'))
        if attempts is None or attempts < 1:
            errors.append('failover.attempts must be a positive integer')
        interval = parse_real(cast(Dict[str, Any], failover).get('interval'))
        if interval is None or interval < 0:
            errors.append('failover.interval must be a non-negative number')

    loop_wait = parse_real(config.get('loop_wait'))
    if loop_wait is None or loop_wait < 0:
        errors.append('loop_wait must be a non-negative number')

    for section in ('repmgr', 'service', 'postgresql', 'log'):
        if not isinstance(config.get(section), dict):
            errors.append('{0} must be a dict'.format(section))
    return errors


class Config(object):
    """Handle pgfailover configuration.

    This class is responsible for:

      1) Building and giving access to ``effective_configuration`` from:

         * ``Config.__DEFAULT_CONFIG`` -- some sane default values;
         * ``local_configuration`` -- configuration from `config.yml` or environment.

      2) Mimicking some ``dict`` interfaces to make it possible to work with it as with a plain ``dict``.

    :cvar PGFAILOVER_CONFIG_VARIABLE: name of the environment variable that can be used to load configuration from.
    :cvar __DEFAULT_CONFIG: default configuration values for some settings.
    """

    PGFAILOVER_CONFIG_VARIABLE = PGFAILOVER_ENV_PREFIX + 'CONFIGURATION'

    __DEFAULT_CONFIG: Dict[str, Any] = {
        'environment': 'production',
        'database_yml': '/var/www/miq/vmdb/config/database.yml',
        'failover_yml': '/var/www/miq/vmdb/config/failover_databases.yml',
        'loop_wait': 300,
        'failover': {'attempts': 10, 'interval': 60},
        'repmgr': {'schema': 'repmgr', 'table': 'nodes'},
        'postgresql': {'connect_timeout': 5},
        'service': {'name': 'evmserverd', 'systemctl': 'systemctl', 'timeout': 60},
        'log': {}
    }

    def __init__(self, configfile: Optional[str],
                 validator: Optional[Callable[[Dict[str, Any]], List[str]]] = default_validator) -> None:
        """Create a new instance of :class:`Config` and validate the loaded configuration using *validator*.

        .. note::
            pgfailover will read configuration from these locations in this order:

              * file or directory path passed as command-line argument (*configfile*), if it exists and the file or
                files found in the directory can be parsed (see :meth:`~Config._load_config_path`), otherwise
              * YAML passed via the environment variable (see :attr:`PGFAILOVER_CONFIG_VARIABLE`), otherwise
              * from configuration values defined as environment variables, see
                :meth:`~Config._build_environment_configuration`.

        :param configfile: path to pgfailover configuration file.
        :param validator: function used to validate the configuration. It should receive a dictionary which
            represents the configuration, and return a list of zero or more error messages based on validation.

        :raises:
            :class:`ConfigParseError`: if any issue is reported by *validator*.
        """
        self.__environment_configuration = self._build_environment_configuration()

        self._config_file = configfile if configfile and os.path.exists(configfile) else None
        if self._config_file:
            self._local_configuration = self._load_config_file()
        else:
            config_env = os.environ.pop(self.PGFAILOVER_CONFIG_VARIABLE, None)
            if config_env:
                try:
                    self._local_configuration = yaml.safe_load(config_env)
                except yaml.YAMLError as e:
                    raise ConfigParseError('invalid {0}: {1}'.format(self.PGFAILOVER_CONFIG_VARIABLE, e)) from e
                if not isinstance(self._local_configuration, dict):
                    raise ConfigParseError('{0} does not contain a dict'.format(self.PGFAILOVER_CONFIG_VARIABLE))
                merge_config(self._local_configuration, self.__environment_configuration)
            else:
                self._local_configuration = self.__environment_configuration

        if validator:
            errors = validator(self._local_configuration)
            if errors:
                raise ConfigParseError("\n".join(errors))

        self.__effective_configuration = self._build_effective_configuration(self._local_configuration)

    @property
    def config_file(self) -> Optional[str]:
        """Path to pgfailover configuration file, if any, else ``None``."""
        return self._config_file

    @property
    def local_configuration(self) -> Dict[str, Any]:
        """Deep copy of cached local configuration."""
        return deepcopy(dict(self._local_configuration))

    @classmethod
    def get_default_config(cls) -> Dict[str, Any]:
        """Deep copy default configuration.

        :returns: copy of :attr:`~Config.__DEFAULT_CONFIG`
        """
        return deepcopy(cls.__DEFAULT_CONFIG)

    def _load_config_path(self, path: str) -> Dict[str, Any]:
        """Load pgfailover configuration file(s) from *path*.

        If *path* is a file, load the yml file pointed to by *path*.
        If *path* is a directory, load all yml files in that directory in alphabetical order.

        :param path: path to either an YAML configuration file, or to a folder containing YAML configuration files.

        :returns: configuration after reading the configuration file(s) from *path*.

        :raises:
            :class:`ConfigParseError`: if *path* is invalid or does not contain dict.
        """
        if os.path.isfile(path):
            files = [path]
        elif os.path.isdir(path):
            files = [os.path.join(path, f) for f in sorted(os.listdir(path))
                     if (f.endswith('.yml') or f.endswith('.yaml')) and os.path.isfile(os.path.join(path, f))]
        else:
            logger.error('config path %s is neither directory nor file', path)
            raise ConfigParseError('invalid config path')

        overall_config: Dict[str, Any] = {}
        for fname in files:
            with open(fname) as f:
                try:
                    config = yaml.safe_load(f)
                except yaml.YAMLError as e:
                    raise ConfigParseError(f'invalid config file {fname}: {e}') from e
                if not isinstance(config, dict):
                    logger.error('%s does not contain a dict', fname)
                    raise ConfigParseError(f'invalid config file {fname}')
                merge_config(overall_config, cast(Dict[Any, Any], config))
        return overall_config

    def _load_config_file(self) -> Dict[str, Any]:
        """Load configuration file(s) from filesystem and apply values which were set via environment variables.

        :returns: final configuration after merging configuration file(s) and environment variables.
        """
        if TYPE_CHECKING:  # pragma: no cover
            assert self.config_file is not None
        config = self._load_config_path(self.config_file)
        merge_config(config, self.__environment_configuration)
        return config

    def reload_local_configuration(self) -> Optional[bool]:
        """Reload configuration values from the configuration file(s).

        .. note::
            Designed to be used when user applies changes to configuration file(s) while running in the loop mode,
            so the new values are used with a reload instead of a restart.

        :returns: ``True`` if changes have been detected between current local configuration and the file.
        """
        if self.config_file:
            try:
                configuration = self._load_config_file()
                if self._local_configuration != configuration:
                    errors = default_validator(configuration)
                    if errors:
                        raise ConfigParseError("\n".join(errors))
                    self.__effective_configuration = self._build_effective_configuration(configuration)
                    self._local_configuration = configuration
                    return True
                else:
                    logger.info('No local configuration items changed.')
            except Exception:
                logger.exception('Exception when reloading local configuration from %s', self.config_file)

    @staticmethod
    def _build_environment_configuration() -> Dict[str, Any]:
        """Get local configuration settings that were specified through environment variables.

        :returns: dictionary containing the found environment variables and their values, respecting the expected
            structure of pgfailover configuration.
        """
        ret: Dict[str, Any] = defaultdict(dict)

        def _popenv(name: str) -> Optional[str]:
            """Get value of environment variable *name*.

            .. note::
                *name* is prefixed with :data:`~pgfailover.PGFAILOVER_ENV_PREFIX` when searching in the environment.

                Also, the corresponding environment variable is removed from the environment upon reading its value.

            :param name: name of the environment variable.

            :returns: value of *name*, if present in the environment, otherwise ``None``.
            """
            return os.environ.pop(PGFAILOVER_ENV_PREFIX + name.upper(), None)

        for param in ('environment', 'database_yml', 'failover_yml'):
            value = _popenv(param)
            if value:
                ret[param] = value

        value = _popenv('loop_wait')
        if value:
            loop_wait = parse_real(value)
            if loop_wait is not None:
                ret['loop_wait'] = loop_wait

        def _set_section_values(section: str, params: List[str]) -> None:
            """Get value of *params* environment variables that are related with *section*.

            :param section: configuration section the *params* belong to.
            :param params: name of the settings.
            """
            for param in params:
                value = _popenv(section + '_' + param)
                if value:
                    ret[section][param] = value

        _set_section_values('failover', ['attempts', 'interval'])
        _set_section_values('repmgr', ['schema', 'table'])
        _set_section_values('postgresql', ['connect_timeout'])
        _set_section_values('service', ['name', 'systemctl', 'timeout'])
        _set_section_values('log', ['type', 'level', 'traceback_level', 'format', 'dateformat', 'static_fields',
                                    'dir', 'mode', 'file_size', 'file_num', 'loggers'])

        # parse all values retrieved from the environment as Python objects, according to the expected type
        for first, params in (('failover', ('attempts',)), ('postgresql', ('connect_timeout',)),
                              ('service', ('timeout',)), ('log', ('file_size', 'file_num', 'mode'))):
            for second in params:
                value = ret.get(first, {}).pop(second, None)
                if value:
                    value = parse_int(value)
                    if value is not None:
                        ret[first][second] = value

        value = ret.get('failover', {}).pop('interval', None)
        if value:
            value = parse_real(value)
            if value is not None:
                ret['failover']['interval'] = value

        def _parse_list(value: str) -> Optional[List[str]]:
            """Parse an YAML list *value* as a :class:`list`.

            :param value: YAML list as a string.

            :returns: *value* as :class:`list`.
            """
            if not (value.strip().startswith('-') or '[' in value):
                value = '[{0}]'.format(value)
            try:
                return yaml.safe_load(value)
            except Exception:
                logger.exception('Exception when parsing list %s', value)
                return None

        logformat = ret.get('log', {}).get('format')
        if logformat and not re.search(r'%\(\w+\)', logformat):
            logformat = _parse_list(logformat)
            if logformat:
                ret['log']['format'] = logformat

        def _parse_dict(value: str) -> Optional[Dict[str, Any]]:
            """Parse an YAML dictionary *value* as a :class:`dict`.

            :param value: YAML dictionary as a string.

            :returns: *value* as :class:`dict`.
            """
            if not value.strip().startswith('{'):
                value = '{{{0}}}'.format(value)
            try:
                return yaml.safe_load(value)
            except Exception:
                logger.exception('Exception when parsing dict %s', value)
                return None

        for second in ('static_fields', 'loggers'):
            value = ret.get('log', {}).pop(second, None)
            if value:
                value = _parse_dict(value)
                if value:
                    ret['log'][second] = value

        return dict(ret)

    def _build_effective_configuration(self, local_configuration: Dict[str, Any]) -> Dict[str, Any]:
        """Build effective configuration by merging default values and *local_configuration*.

        .. note::
            *local_configuration* takes precedence over default values. Sections are merged key by key.

        :param local_configuration: pgfailover local configuration.

        :returns: the effective configuration.
        """
        config = self.get_default_config()
        for name, value in local_configuration.items():
            if isinstance(value, dict) and isinstance(config.get(name), dict):
                config[name].update(deepcopy(cast(Dict[str, Any], value)))
            elif value is not None:
                config[name] = deepcopy(value)
        return config

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        """Get effective value of ``key`` setting from configuration root.

        Designed to work the same way as :func:`dict.get`.

        :param key: name of the setting.
        :param default: default value if *key* is not present in the effective configuration.

        :returns: value of *key*, if present in the effective configuration, otherwise *default*.
        """
        return self.__effective_configuration.get(key, default)

    def __contains__(self, key: str) -> bool:
        """Check if setting *key* is present in the effective configuration.

        :param key: name of the setting to be checked.

        :returns: ``True`` if setting *key* exists in effective configuration, else ``False``.
        """
        return key in self.__effective_configuration

    def __getitem__(self, key: str) -> Any:
        """Get value of setting *key* from effective configuration.

        :param key: name of the setting.

        :returns: value of setting *key*.

        :raises:
            :class:`KeyError`: if *key* is not present in effective configuration.
        """
        return self.__effective_configuration[key]

    def copy(self) -> Dict[str, Any]:
        """Get a deep copy of effective configuration.

        :returns: a deep copy of the configuration.
        """
        return deepcopy(self.__effective_configuration)
