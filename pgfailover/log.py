"""pgfailover logging facilities.

Log records are written either to ``stderr`` or, if ``log.dir`` is configured, to a rotating ``pgfailover.log`` file in
that directory. Records are formatted as plain text or as JSON documents.
"""
import logging
import os
import sys

from io import TextIOWrapper
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, List, Optional, Union

from .utils import parse_int

_LOGGER = logging.getLogger(__name__)


class FailoverFileHandler(RotatingFileHandler):
    """Rotating log file created with restricted permissions.

    The log contains host names and user names of the database cluster, by default the files are readable by the
    owner only.
    """

    def __init__(self, filename: str, mode: Optional[int]) -> None:
        self.set_log_file_mode(mode)
        super(FailoverFileHandler, self).__init__(filename)

    def set_log_file_mode(self, mode: Optional[int]) -> None:
        self._log_file_mode = 0o600 if mode is None else mode

    def _open(self) -> TextIOWrapper:
        ret = super(FailoverFileHandler, self)._open()
        os.chmod(self.baseFilename, self._log_file_mode)
        return ret


def debug_exception(self: logging.Logger, msg: object, *args: Any, **kwargs: Any) -> None:
    """Replacement of :meth:`logging.Logger.exception` used when ``log.traceback_level`` is ``DEBUG``.

    The traceback is only emitted at ``DEBUG`` level. Otherwise an ``ERROR`` record carries the exception message
    appended to *msg*.
    """
    kwargs.pop('exc_info', None)
    if self.isEnabledFor(logging.DEBUG):
        self.debug(msg, *args, exc_info=True, **kwargs)
    else:
        self.error("{0}, DETAIL: '{1}'".format(msg, sys.exc_info()[1]), *args, exc_info=False, **kwargs)


def error_exception(self: logging.Logger, msg: object, *args: Any, **kwargs: Any) -> None:
    """Replacement of :meth:`logging.Logger.exception` that always emits the traceback at ``ERROR`` level."""
    kwargs.setdefault('exc_info', True)
    self.error(msg, *args, **kwargs)


class FailoverLogger(object):
    """Configure the root logger from the ``log`` section of the configuration.

    :cvar DEFAULT_TYPE: default type of log format (``plain``).
    :cvar DEFAULT_LEVEL: default logging level (``INFO``).
    :cvar DEFAULT_TRACEBACK_LEVEL: default traceback logging level (``ERROR``).
    :cvar DEFAULT_FORMAT: default format of log messages (``%(asctime)s %(levelname)s: %(message)s``).

    :ivar log_handler: log handler that is currently attached to the root logger.
    """

    DEFAULT_TYPE = 'plain'
    DEFAULT_LEVEL = 'INFO'
    DEFAULT_TRACEBACK_LEVEL = 'ERROR'
    DEFAULT_FORMAT = '%(asctime)s %(levelname)s: %(message)s'

    def __init__(self) -> None:
        self._root_logger = logging.getLogger()
        self._config: Optional[Dict[str, Any]] = None
        self.log_handler: Optional[logging.Handler] = None

    def update_loggers(self, config: Dict[str, Any]) -> None:
        """Set levels of individual loggers from ``log.loggers``, e.g. ``{'pgfailover.topology': 'DEBUG'}``.

        Loggers that were configured before but are absent from *config* are reset to ``NOTSET``.
        """
        levels = dict(config)
        for name, logger in list(self._root_logger.manager.loggerDict.items()):
            if isinstance(logger, logging.Logger):
                logger.setLevel(levels.pop(name, logging.NOTSET))
        for name, level in levels.items():
            logging.getLogger(name).setLevel(level)

    def _get_plain_formatter(self, logformat: Any, dateformat: Optional[str]) -> logging.Formatter:
        if not isinstance(logformat, str):
            _LOGGER.warning('Expected log format to be a string when log type is plain, but got "%s"',
                            type(logformat).__name__)
            logformat = FailoverLogger.DEFAULT_FORMAT
        return logging.Formatter(logformat, dateformat)

    def _get_json_formatter(self, logformat: Union[str, List[Any], Any], dateformat: Optional[str],
                            static_fields: Dict[str, Any]) -> logging.Formatter:
        """Build a :class:`pythonjsonlogger` formatter.

        :param logformat: a format string, or a list of record attribute names to include in every document.
        :param dateformat: format of ``asctime``.
        :param static_fields: fields added as-is to every document.

        :returns: the JSON formatter, or a plain formatter if ``python-json-logger`` can't be used.
        """
        if isinstance(logformat, list):
            fields = [f for f in logformat if isinstance(f, str)]
            if len(fields) != len(logformat):
                _LOGGER.warning('Expected log format fields to be strings, ignoring the others')
            jsonformat = ' '.join('%({0})s'.format(f) for f in fields) or FailoverLogger.DEFAULT_FORMAT
        elif isinstance(logformat, str):
            jsonformat = logformat
        else:
            _LOGGER.warning('Expected log format to be a string or a list, but got "%s"', type(logformat).__name__)
            jsonformat = FailoverLogger.DEFAULT_FORMAT

        try:
            try:
                from pythonjsonlogger import json as jsonlogger  # pyright: ignore
            except ImportError:  # pragma: no cover
                from pythonjsonlogger import jsonlogger

            return jsonlogger.JsonFormatter(jsonformat, dateformat,  # pyright: ignore [reportPrivateImportUsage]
                                            static_fields=static_fields)
        except ImportError as e:
            _LOGGER.error('Failed to import "python-json-logger" library: %r. Falling back to the plain logger', e)
        except Exception as e:
            _LOGGER.error('Failed to initialize JsonFormatter: %r. Falling back to the plain logger', e)
        return self._get_plain_formatter(jsonformat, dateformat)

    def _get_formatter(self, config: Dict[str, Any]) -> logging.Formatter:
        logformat = config.get('format', FailoverLogger.DEFAULT_FORMAT)
        dateformat = config.get('dateformat') or None
        if dateformat is not None and not isinstance(dateformat, str):
            _LOGGER.warning('Expected log dateformat to be a string, but got "%s"', type(dateformat).__name__)
            dateformat = None

        if config.get('type', FailoverLogger.DEFAULT_TYPE) == 'json':
            return self._get_json_formatter(logformat, dateformat, config.get('static_fields') or {})
        return self._get_plain_formatter(logformat, dateformat)

    def reload_config(self, config: Dict[str, Any]) -> None:
        """Apply the ``log`` section of the configuration.

        .. note::
            Calling it again with a changed section replaces the handler, the previous one is detached and closed.

        :param config: ``log`` section from the configuration.
        """
        if config == self._config:
            return

        self._root_logger.setLevel(config.get('level', FailoverLogger.DEFAULT_LEVEL))
        if str(config.get('traceback_level', FailoverLogger.DEFAULT_TRACEBACK_LEVEL)).lower() == 'debug':
            logging.Logger.exception = debug_exception
        else:
            logging.Logger.exception = error_exception

        handler = self.log_handler
        if 'dir' in config:
            mode = parse_int(config.get('mode'))
            if not isinstance(handler, FailoverFileHandler):
                handler = FailoverFileHandler(os.path.join(config['dir'], __name__), mode)
            handler.set_log_file_mode(mode)
            handler.maxBytes = int(config.get('file_size', 25000000))
            handler.backupCount = int(config.get('file_num', 4))
        # FailoverFileHandler is a StreamHandler too
        elif handler is None or isinstance(handler, FailoverFileHandler):
            handler = logging.StreamHandler()
        handler.setFormatter(self._get_formatter(config))

        if handler is not self.log_handler:
            if self.log_handler is not None:
                self._root_logger.removeHandler(self.log_handler)
                try:
                    self.log_handler.close()
                except Exception:
                    _LOGGER.exception('Failed to close the old log handler %s', self.log_handler)
            self._root_logger.addHandler(handler)
            self.log_handler = handler

        self._config = dict(config)
        self.update_loggers(config.get('loggers') or {})

    def shutdown(self) -> None:
        """Detach the handler from the root logger and flush everything."""
        if self.log_handler is not None:
            self._root_logger.removeHandler(self.log_handler)
            self.log_handler.close()
            self.log_handler = None
        logging.shutdown()
