"""Failover decision engine.

One call of :meth:`FailoverMonitor.check_and_failover` runs one health-check/failover cycle:

* the configured primary is reachable: refresh the topology cache and do nothing else;
* the primary is unreachable: stop the application, search for a standby that repmgr confirms as the new master
  within a bounded number of attempts, and if one is found point the application to it and start the application
  again. Otherwise the application is left stopped until the next cycle.

The side effects of a failover always happen in this order: stop the application, write the new primary to the
application configuration, refresh the topology cache, start the application.
"""
import logging
import time

from enum import Enum
from typing import Any, Callable, Dict, List, NamedTuple, Optional, TYPE_CHECKING, Union

from . import psycopg
from .connection import AbstractConnectionProbe, AbstractRecoveryChecker, ConnectionParams
from .exceptions import ConfigParseError, ConnectionParamsError, FailoverException, ServiceError, StoreError
from .primary import AbstractPrimaryConfigStore
from .service import AbstractServiceController
from .topology import AbstractTopologyStore, ClusterNode, NodeRole
from .utils import parse_int, parse_real

if TYPE_CHECKING:  # pragma: no cover
    from .config import Config

logger = logging.getLogger(__name__)


class FailoverPolicy(NamedTuple):
    """Bounds of the search for a new primary.

    :ivar max_attempts: how many times the list of candidates is scanned.
    :ivar attempt_interval: seconds to wait between two scans.
    """

    max_attempts: int = 10
    attempt_interval: float = 60

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'FailoverPolicy':
        """Build a :class:`FailoverPolicy` from the ``failover`` configuration section.

        :param config: :class:`dict` with optional ``attempts`` and ``interval`` keys.

        :returns: a validated :class:`FailoverPolicy`.

        :raises:
            :exc:`~pgfailover.exceptions.ConfigParseError`: if *config* is not a :class:`dict`, ``attempts`` is not a
                positive integer or ``interval`` is not a non-negative number.

        :Example:

            >>> FailoverPolicy.from_config({'attempts': '3', 'interval': 0.5})
            FailoverPolicy(max_attempts=3, attempt_interval=0.5)
        """
        if not isinstance(config, dict):
            raise ConfigParseError('failover must be a dict, got {0!r}'.format(config))
        attempts = parse_int(config.get('attempts', cls._field_defaults['max_attempts']))
        interval = parse_real(config.get('interval', cls._field_defaults['attempt_interval']))
        if attempts is None or attempts < 1:
            raise ConfigParseError('failover.attempts must be a positive integer, got {0!r}'
                                   .format(config.get('attempts')))
        if interval is None or interval < 0:
            raise ConfigParseError('failover.interval must be a non-negative number, got {0!r}'
                                   .format(config.get('interval')))
        return cls(attempts, interval)


class OutcomeKind(str, Enum):
    """Possible results of one cycle."""

    HEALTHY = 'healthy'
    RECOVERED = 'recovered'
    FAILED = 'failed'

    def __repr__(self) -> str:
        return self.value


class FailoverOutcome(NamedTuple):
    """Result of :meth:`FailoverMonitor.check_and_failover` and :meth:`FailoverMonitor.execute_failover`.

    :ivar kind: :class:`OutcomeKind` of the result.
    :ivar new_primary: the confirmed new primary, set only for :attr:`OutcomeKind.RECOVERED`.
    """

    kind: OutcomeKind
    new_primary: Optional[ConnectionParams] = None

    @classmethod
    def healthy(cls) -> 'FailoverOutcome':
        return cls(OutcomeKind.HEALTHY)

    @classmethod
    def recovered(cls, new_primary: ConnectionParams) -> 'FailoverOutcome':
        return cls(OutcomeKind.RECOVERED, new_primary)

    @classmethod
    def failed(cls) -> 'FailoverOutcome':
        return cls(OutcomeKind.FAILED)

    @property
    def is_healthy(self) -> bool:
        return self.kind == OutcomeKind.HEALTHY

    @property
    def is_recovered(self) -> bool:
        return self.kind == OutcomeKind.RECOVERED

    @property
    def is_failed(self) -> bool:
        return self.kind == OutcomeKind.FAILED

    def __str__(self) -> str:
        if self.new_primary:
            return '{0} ({1})'.format(self.kind.value, self.new_primary.host)
        return self.kind.value


class MonitorState(str, Enum):
    """States of a single cycle, used for audit logging.

    ``committing`` is the only state in which the application configuration is written and the application started.
    """

    MONITORING = 'monitoring'
    PRIMARY_UNREACHABLE = 'primary unreachable'
    SERVICE_STOPPING = 'stopping service'
    CANDIDATE_SEARCH = 'searching candidates'
    COMMITTING = 'committing'
    FAILED = 'failed'

    def __repr__(self) -> str:
        return self.value


class FailoverMonitor(object):
    """Detect loss of the primary and redirect the application to the standby promoted by repmgr.

    The monitor keeps no state between cycles, every cycle reads the current primary and topology from the stores.

    :ivar primary_store: the application's record of the primary.
    :ivar topology: cache of cluster members and the live repmgr query.
    :ivar probe: opens connections to cluster members.
    :ivar recovery: tells whether a member is still a standby.
    :ivar service: controls the dependent application.
    :ivar policy: bounds of the candidate search.
    :ivar sleep_func: function used to wait between two attempts.
    :ivar state: :class:`MonitorState` of the cycle in progress.
    """

    def __init__(self, primary_store: AbstractPrimaryConfigStore, topology: AbstractTopologyStore,
                 probe: AbstractConnectionProbe, recovery: AbstractRecoveryChecker,
                 service: AbstractServiceController, policy: Optional[FailoverPolicy] = None,
                 sleep_func: Callable[[Union[int, float]], None] = time.sleep) -> None:
        self.primary_store = primary_store
        self.topology = topology
        self.probe = probe
        self.recovery = recovery
        self.service = service
        self.policy = policy or FailoverPolicy()
        self.sleep_func = sleep_func
        self.state = MonitorState.MONITORING

    @classmethod
    def from_config(cls, config: 'Config') -> 'FailoverMonitor':
        """Create a :class:`FailoverMonitor` with the production collaborators configured in *config*.

        :param config: pgfailover configuration.

        :returns: a new :class:`FailoverMonitor` instance.

        :raises:
            :exc:`~pgfailover.exceptions.ConfigParseError`: if a section is not a :class:`dict`, a required setting
                is missing, or the failover policy is invalid.
        """
        from .connection import ConnectionProbe, RecoveryChecker
        from .primary import DatabaseYml
        from .service import SystemdService
        from .topology import FailoverDatabases

        for section in ('repmgr', 'service', 'postgresql'):
            if not isinstance(config[section], dict):
                raise ConfigParseError('{0} must be a dict, got {1!r}'.format(section, config[section]))
        repmgr = config['repmgr']
        service = config['service']
        for name, value in (('environment', config['environment']), ('database_yml', config['database_yml']),
                            ('failover_yml', config['failover_yml']), ('repmgr.schema', repmgr.get('schema')),
                            ('repmgr.table', repmgr.get('table')), ('service.name', service.get('name'))):
            if not isinstance(value, str) or not value:
                raise ConfigParseError('{0} must be a non-empty string, got {1!r}'.format(name, value))

        probe = ConnectionProbe(parse_int(config['postgresql'].get('connect_timeout')) or 5)
        return cls(DatabaseYml(config['database_yml'], config['environment']),
                   FailoverDatabases(config['failover_yml'], repmgr['schema'], repmgr['table']),
                   probe, RecoveryChecker(probe),
                   SystemdService(service['name'], service.get('systemctl') or 'systemctl',
                                  parse_int(service.get('timeout')) or 60),
                   FailoverPolicy.from_config(config['failover']))

    def _set_state(self, state: MonitorState) -> None:
        if state != self.state:
            logger.debug('state: %s -> %s', self.state, state)
        self.state = state

    def check_and_failover(self) -> FailoverOutcome:
        """Run exactly one health-check/failover cycle.

        :returns: :class:`FailoverOutcome` of the cycle.

        :raises:
            :exc:`~pgfailover.exceptions.ConfigParseError`: if the configured primary can't be read. Raised before
                any side effect.

            :exc:`~pgfailover.exceptions.StoreError`: if the topology cache can't be refreshed while the primary is
                healthy, or if the new primary could not be written. In the latter case the application is left
                stopped.

            :exc:`~pgfailover.exceptions.ServiceError`: if the application could not be stopped before the new
                primary was written, or could not be started after it was written.
        """
        self.state = MonitorState.MONITORING
        params = self.primary_store.read()

        with self.probe.connection(params) as conn:
            if conn is not None:
                self.topology.refresh(conn)
                logger.debug('Primary %s is reachable', params.host)
                return FailoverOutcome.healthy()

        self._set_state(MonitorState.PRIMARY_UNREACHABLE)
        logger.error('Primary database %s is not reachable', params.host)
        self.stop_service()

        outcome = self.execute_failover(fallback_password=params.password, fallback_params=params)
        if outcome.new_primary is not None:
            self.commit(outcome.new_primary)
        else:
            self._set_state(MonitorState.FAILED)
            logger.error('Failover failed: no new primary could be confirmed, '
                         'the application stays stopped until the next check')
        return outcome

    def stop_service(self) -> None:
        """Stop the application if it is running.

        .. note::
            A failure to stop is logged and doesn't interrupt the cycle: once the primary is gone the cycle has to
            reach its terminal outcome.
        """
        if self.service.is_running():
            self._set_state(MonitorState.SERVICE_STOPPING)
            logger.info('Stopping the application before failover')
            try:
                self.service.stop()
            except ServiceError as e:
                logger.error('Failed to stop the application: %s', e.value)

    def commit(self, new_primary: ConnectionParams) -> None:
        """Make the application use *new_primary* and start it.

        The new primary is only written while the application is stopped, and before the application is started, so
        the application never keeps running against the lost primary. Refreshing the topology cache is attempted in
        between, its failure doesn't prevent the start.

        :param new_primary: the confirmed new primary.

        :raises:
            :exc:`~pgfailover.exceptions.StoreError`: if the new primary could not be written.
            :exc:`~pgfailover.exceptions.ServiceError`: if the application is still running and could not be stopped,
                nothing is written in this case. Also raised if the application could not be started.
        """
        self._set_state(MonitorState.COMMITTING)
        if self.service.is_running():
            logger.warning('The application is still running, stopping it before the new primary is written')
            try:
                self.service.stop()
            except ServiceError as e:
                self._set_state(MonitorState.FAILED)
                logger.error('Failed to stop the application, %s is not written: %s', new_primary.host, e.value)
                raise

        try:
            self.primary_store.write(new_primary)
        except StoreError as e:
            self._set_state(MonitorState.FAILED)
            logger.error('Failed to write the new primary %s, the application stays stopped: %s',
                         new_primary.host, e.value)
            raise

        try:
            with self.probe.connection(new_primary) as conn:
                if conn is None:
                    logger.error('Failed to connect to the new primary %s to refresh the topology cache',
                                 new_primary.host)
                else:
                    self.topology.refresh(conn)
        except FailoverException as e:
            logger.error('Failed to refresh the topology cache from %s: %s', new_primary.host, e.value)

        self.service.start()
        self._set_state(MonitorState.MONITORING)
        logger.info('Failover to %s completed', new_primary.host)

    def _candidates(self) -> List[ClusterNode]:
        try:
            members = self.topology.active_members()
        except StoreError as e:
            logger.error('Failed to read the topology cache: %s', e.value)
            return []
        return [m for m in members if m.role == NodeRole.STANDBY]

    @staticmethod
    def _candidate_params(candidate: ClusterNode, fallback_password: Optional[str],
                          fallback_params: Optional[ConnectionParams]) -> ConnectionParams:
        """Connection parameters of *candidate*.

        repmgr conninfo strings may omit ``user`` and ``dbname``, those are taken from *fallback_params*.
        """
        params = candidate.params._replace(password=fallback_password)
        if fallback_params is not None:
            params = params._replace(user=params.user or fallback_params.user,
                                     dbname=params.dbname or fallback_params.dbname)
        return params

    def _confirm_candidate(self, candidate: ClusterNode, params: ConnectionParams) -> Optional[str]:
        if self.recovery.is_in_recovery(params):
            logger.info('Standby %s is still in recovery', candidate.host)
            return None

        with self.probe.connection(params) as conn:
            if conn is None:
                logger.warning('Standby %s is not in recovery but is not reachable', candidate.host)
                return None
            host = self.host_for_primary_database(conn, candidate)

        if not host:
            logger.warning('Standby %s is not in recovery but repmgr does not report it as the primary',
                           candidate.host)
        return host

    def execute_failover(self, policy: Optional[FailoverPolicy] = None, fallback_password: Optional[str] = None,
                         fallback_params: Optional[ConnectionParams] = None) -> FailoverOutcome:
        """Search for a standby that repmgr confirms as the new master.

        .. note::
            Candidates are the active standbys of the topology cache. A candidate that is still in recovery is
            skipped in the current attempt: its promotion may be in progress. A candidate whose connection
            parameters are unusable is skipped as well, it never aborts the search.

        :param policy: bounds of the search, defaults to :attr:`policy`.
        :param fallback_password: password to use for candidates that have none in the cache.
        :param fallback_params: connection parameters of the lost primary, used to fill in ``user`` and ``dbname``
            missing from the cache.

        :returns: :attr:`OutcomeKind.RECOVERED` with the new primary as soon as one is confirmed, or
            :attr:`OutcomeKind.FAILED` once *policy* ``max_attempts`` are exhausted.
        """
        policy = policy or self.policy
        self._set_state(MonitorState.CANDIDATE_SEARCH)

        for attempt in range(1, policy.max_attempts + 1):
            logger.info('Failover attempt %d of %d', attempt, policy.max_attempts)
            candidates = self._candidates()
            if not candidates:
                logger.warning('No active standby found in the topology cache')

            for candidate in candidates:
                params = self._candidate_params(candidate, fallback_password, fallback_params)
                try:
                    host = self._confirm_candidate(candidate, params)
                except ConnectionParamsError as e:
                    logger.error('Skipping standby %s: %s', candidate.host, e.value)
                    continue

                if host:
                    logger.info('Standby %s is confirmed as the new primary', host)
                    return FailoverOutcome.recovered(params._replace(host=host))

            if attempt < policy.max_attempts:
                self.sleep_func(policy.attempt_interval)

        logger.error('Failover attempts exhausted after %d attempts', policy.max_attempts)
        return FailoverOutcome.failed()

    def host_for_primary_database(self, connection: Any,
                                  expected: Union[ClusterNode, ConnectionParams]) -> Optional[str]:
        """Confirm through repmgr metadata that *expected* is the current master of the cluster.

        .. note::
            The topology is queried through *connection*, which may point to any live member. The candidate's own
            opinion about its role is not trusted.

        :param connection: open connection to a cluster member.
        :param expected: the node expected to be the master.

        :returns: host of *expected* if it is the only active master reported by repmgr, otherwise ``None``. Zero or
            several active masters are ambiguous and never confirm anything.
        """
        try:
            nodes = self.topology.query(connection)
        except (psycopg.Error, FailoverException) as e:
            logger.warning('Failed to query repmgr while confirming %s: %r', expected.host, e)
            return None

        masters = [n for n in nodes if n.is_master and n.active]
        if len(masters) != 1:
            if masters:
                logger.warning('repmgr reports %d active masters: %s', len(masters),
                               ', '.join(m.host for m in masters))
            return None
        if masters[0].host != expected.host:
            return None
        return masters[0].host
