"""Start and stop the application that depends on the primary."""
import abc
import logging
import subprocess

from typing import List

from .exceptions import ServiceError

logger = logging.getLogger(__name__)


class AbstractServiceController(abc.ABC):
    """Control the dependent application process.

    .. note::
        :meth:`stop` and :meth:`start` are expected to be idempotent: stopping an already stopped service is not an
        error.
    """

    @abc.abstractmethod
    def is_running(self) -> bool:
        """Check if the application is running."""

    @abc.abstractmethod
    def stop(self) -> None:
        """Stop the application.

        :raises:
            :exc:`~pgfailover.exceptions.ServiceError`: if the application could not be stopped.
        """

    @abc.abstractmethod
    def start(self) -> None:
        """Start the application.

        :raises:
            :exc:`~pgfailover.exceptions.ServiceError`: if the application could not be started.
        """


class SystemdService(AbstractServiceController):
    """Control a systemd unit with ``systemctl``.

    :ivar name: name of the systemd unit, e.g. ``evmserverd``.
    :ivar systemctl: path to the ``systemctl`` binary.
    :ivar timeout: maximum time in seconds to wait for ``systemctl`` to return.
    """

    def __init__(self, name: str, systemctl: str = 'systemctl', timeout: int = 60) -> None:
        self.name = name
        self.systemctl = systemctl
        self.timeout = timeout

    def _systemctl(self, *args: str) -> int:
        cmd: List[str] = [self.systemctl] + list(args) + [self.name]
        logger.debug('Calling %s', cmd)
        try:
            return subprocess.call(cmd, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise ServiceError('{0} did not finish in {1} seconds'.format(' '.join(cmd), self.timeout)) from e
        except OSError as e:
            raise ServiceError('failed to execute {0}: {1}'.format(' '.join(cmd), e)) from e

    def is_running(self) -> bool:
        """Check if the unit is active.

        .. note::
            If the state can't be determined the unit is reported as running, so that a stop is still attempted.
        """
        try:
            return self._systemctl('is-active', '--quiet') == 0
        except ServiceError as e:
            logger.error('Failed to check if %s is running: %s', self.name, e)
            return True

    def _run(self, action: str) -> None:
        ret = self._systemctl(action)
        if ret != 0:
            raise ServiceError('systemctl {0} {1} exited with code {2}'.format(action, self.name, ret))
        logger.info('%s %s', self.name, 'stopped' if action == 'stop' else 'started')

    def stop(self) -> None:
        self._run('stop')

    def start(self) -> None:
        self._run('start')
