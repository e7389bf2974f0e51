"""Loop mode of ``pgfailover``.

The check cycle is repeated until SIGTERM. SIGHUP reloads the configuration between two cycles.
"""
import abc
import logging
import signal
import time

from typing import Any, Optional, Type, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .config import Config

logger = logging.getLogger(__name__)


class AbstractMonitorDaemon(abc.ABC):
    """A ``pgfailover`` process running in loop mode.

    .. note::

        Subclasses define :func:`_run_cycle` and :func:`_shutdown`.

        Signal handlers only set flags. A SIGTERM never interrupts a cycle, the main loop exits before starting
        the next one, so a failover in progress always reaches its outcome.

    :ivar logger: log handler used by this daemon.
    :ivar config: configuration options for this daemon.
    """

    def __init__(self, config: 'Config') -> None:
        from .log import FailoverLogger

        self._received_sighup = False
        self._received_sigterm = False
        signal.signal(signal.SIGHUP, self.sighup_handler)
        signal.signal(signal.SIGTERM, self.sigterm_handler)

        self.logger = FailoverLogger()
        self.config = config
        AbstractMonitorDaemon.reload_config(self, local=True)

    def sighup_handler(self, *_: Any) -> None:
        self._received_sighup = True

    def sigterm_handler(self, *_: Any) -> None:
        if not self._received_sigterm:
            self._received_sigterm = True
            logger.info('Received SIGTERM, exiting after the current cycle')

    @property
    def received_sigterm(self) -> bool:
        return self._received_sigterm

    def reload_config(self, sighup: bool = False, local: Optional[bool] = False) -> None:
        """Reload configuration.

        :param sighup: if it is related to a SIGHUP signal.
        :param local: will be ``True`` if there are changes in the local configuration file.
        """
        if local:
            self.logger.reload_config(self.config.get('log', {}))

    @abc.abstractmethod
    def _run_cycle(self) -> None:
        """Run one check cycle, called repeatedly by :func:`run`."""

    def wait(self, timeout: float) -> None:
        """Sleep up to *timeout* seconds in steps of at most one second, returning early once a signal was received."""
        deadline = time.time() + timeout
        while not (self._received_sigterm or self._received_sighup):
            remaining = deadline - time.time()
            if remaining <= 0:
                break
            time.sleep(min(1, remaining))

    def run(self) -> None:
        while not self._received_sigterm:
            if self._received_sighup:
                self._received_sighup = False
                self.reload_config(True, self.config.reload_local_configuration())

            self._run_cycle()

    @abc.abstractmethod
    def _shutdown(self) -> None:
        """Define what the daemon should do when shutting down."""

    def shutdown(self) -> None:
        """Shut the daemon down and flush the logs."""
        self._received_sigterm = True
        self._shutdown()
        self.logger.shutdown()


def abstract_main(cls: Type[AbstractMonitorDaemon], config: 'Config') -> None:
    """Run the main loop of a given daemon class.

    :param cls: a class that should inherit from :class:`AbstractMonitorDaemon`.
    :param config: pgfailover configuration.
    """
    controller = cls(config)
    try:
        controller.run()
    except KeyboardInterrupt:
        pass
    finally:
        controller.shutdown()
