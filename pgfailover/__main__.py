"""pgfailover main entry point.

Implement the ``pgfailover`` command. By default a single health-check/failover cycle is run and the process exits,
so it can be scheduled by cron or a systemd timer. With ``--loop`` the cycle is repeated every ``loop_wait`` seconds.
"""
import logging
import sys

from argparse import ArgumentParser, Namespace
from typing import List, Optional, TYPE_CHECKING

from pgfailover import MIN_PSYCOPG2, MIN_PSYCOPG3, parse_version
from pgfailover.daemon import abstract_main, AbstractMonitorDaemon
from pgfailover.exceptions import ConfigParseError, FailoverException

if TYPE_CHECKING:  # pragma: no cover
    from .config import Config
    from .monitor import FailoverMonitor, FailoverOutcome

logger = logging.getLogger(__name__)


def run_check(config: 'Config') -> 'FailoverOutcome':
    """Run exactly one health-check/failover cycle with the production collaborators configured in *config*.

    :param config: pgfailover configuration.

    :returns: outcome of the cycle.

    :raises:
        :exc:`~pgfailover.exceptions.FailoverException`: if the cycle could not reach an outcome, see
            :meth:`~pgfailover.monitor.FailoverMonitor.check_and_failover`.
    """
    from pgfailover.monitor import FailoverMonitor

    return FailoverMonitor.from_config(config).check_and_failover()


class FailoverMonitorDaemon(AbstractMonitorDaemon):
    """Implement ``pgfailover --loop``.

    :ivar monitor: failover engine built from the current configuration.
    """

    def __init__(self, config: 'Config') -> None:
        from pgfailover.monitor import FailoverMonitor

        super(FailoverMonitorDaemon, self).__init__(config)
        self.monitor: FailoverMonitor = FailoverMonitor.from_config(self.config)

    def reload_config(self, sighup: bool = False, local: Optional[bool] = False) -> None:
        """Apply new configuration values and rebuild the failover engine.

        :param sighup: if it is related to a SIGHUP signal.
        :param local: if there has been changes to the local configuration file.
        """
        from pgfailover.monitor import FailoverMonitor

        try:
            super(FailoverMonitorDaemon, self).reload_config(sighup, local)
            if local:
                self.monitor = FailoverMonitor.from_config(self.config)
        except Exception:
            logger.exception('Failed to reload config_file=%s', self.config.config_file)

    @property
    def loop_wait(self) -> float:
        return float(self.config['loop_wait'])

    def _run_cycle(self) -> None:
        """Run one cycle and wait ``loop_wait`` seconds for the next one.

        Errors of a cycle are logged, the next cycle starts from scratch.
        """
        try:
            logger.info('Check finished: %s', self.monitor.check_and_failover())
        except FailoverException as e:
            logger.error('Check failed: %s', e.value)

        if not self.received_sigterm:
            self.wait(self.loop_wait)

    def _shutdown(self) -> None:
        logger.info('Shutting down')


def load_config(configfile: str) -> 'Config':
    """Load the configuration or exit with the error message.

    :param configfile: path to pgfailover configuration file or directory.

    :returns: the loaded :class:`~pgfailover.config.Config`.
    """
    from pgfailover.config import Config

    try:
        return Config(configfile)
    except ConfigParseError as e:
        sys.exit(e.value)


def process_arguments() -> Namespace:
    """Process command-line arguments.

    Besides the optional configuration file path and ``--version``, these flags are accepted:

      * ``--loop`` -- keep running the check every ``loop_wait`` seconds instead of running it once
      * ``--validate-config`` -- used to validate the pgfailover configuration file
      * ``--print`` | ``-p`` -- used to print out local configuration (incl. environment configuration overrides).
          Can be used only with ``--validate-config``

    .. note::
        If running with ``--validate-config`` will exit after validating configuration.

    :returns: parsed arguments, if not running with ``--validate-config`` flag.
    """
    from pgfailover.config import Config
    from pgfailover.version import __version__

    parser = ArgumentParser()
    parser.add_argument('--version', action='version', version='%(prog)s {0}'.format(__version__))
    parser.add_argument('configfile', nargs='?', default='',
                        help='pgfailover may also read the configuration from the {0} environment variable'
                        .format(Config.PGFAILOVER_CONFIG_VARIABLE))
    group = parser.add_mutually_exclusive_group()
    group.add_argument('--loop', action='store_true', help='Run the check every loop_wait seconds until SIGTERM')
    group.add_argument('--validate-config', action='store_true', help='Run config validator and exit')
    parser.add_argument('--print', '-p', action='store_true',
                        help='Print out local configuration (incl. environment configuration overrides).\
                              Can only be used with --validate-config')
    args = parser.parse_args()

    if args.validate_config:
        config = load_config(args.configfile)

        if args.print:
            import yaml
            yaml.safe_dump(config.local_configuration, sys.stdout, default_flow_style=False, allow_unicode=True)
        sys.exit()

    return args


def check_psycopg() -> None:
    """Ensure at least one among :mod:`psycopg2` or :mod:`psycopg` libraries are available in the environment.

    .. note::
        pgfailover chooses :mod:`psycopg2` over :mod:`psycopg`, if possible.

        If nothing meeting the requirements is found, then exit with a fatal message.
    """
    min_psycopg2_str = '.'.join(map(str, MIN_PSYCOPG2))
    min_psycopg3_str = '.'.join(map(str, MIN_PSYCOPG3))

    available_versions: List[str] = []

    # try psycopg2
    try:
        from psycopg2 import __version__
        if parse_version(__version__) >= MIN_PSYCOPG2:
            return
        available_versions.append('psycopg2=={0}'.format(__version__.split(' ')[0]))
    except ImportError:
        logger.debug('psycopg2 module is not available')

    # try psycopg3
    try:
        from psycopg import __version__
        if parse_version(__version__) >= MIN_PSYCOPG3:
            return
        available_versions.append('psycopg=={0}'.format(__version__.split(' ')[0]))
    except ImportError:
        logger.debug('psycopg module is not available')

    error = f'FATAL: pgfailover requires psycopg2>={min_psycopg2_str}, psycopg2-binary, or psycopg>={min_psycopg3_str}'
    if available_versions:
        error += ', but only {0} {1} available'.format(
            ' and '.join(available_versions),
            'is' if len(available_versions) == 1 else 'are')
    sys.exit(error)


def main() -> None:
    """Main entrypoint of :mod:`pgfailover.__main__`.

    Process command-line arguments, ensure :mod:`psycopg2` (or :mod:`psycopg`) meets the pre-requisites and either
    run a single check or start the loop.

    .. note::
        A single check exits with code ``0`` if the primary is healthy or a new primary was committed, and with code
        ``1`` if the failover failed or the cycle was aborted by an error.
    """
    check_psycopg()

    args = process_arguments()
    config = load_config(args.configfile)

    if args.loop:
        return abstract_main(FailoverMonitorDaemon, config)

    from pgfailover.log import FailoverLogger

    log = FailoverLogger()
    log.reload_config(config.get('log', {}))
    try:
        outcome = run_check(config)
        logger.info('Check finished: %s', outcome)
        ret = 1 if outcome.is_failed else 0
    except FailoverException as e:
        logger.error('Check failed: %s', e.value)
        ret = 1
    finally:
        log.shutdown()
    sys.exit(ret)


if __name__ == '__main__':
    main()
