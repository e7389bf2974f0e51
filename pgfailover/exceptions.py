"""Implement high-level pgfailover exceptions.

Reachability problems are not exceptions: unreachable nodes are an expected signal that drives the failover state
machine. Only configuration problems and failures of the persisted stores or of the service wrapper are raised.
"""
from typing import Any


class FailoverException(Exception):
    """Parent class for all kind of pgfailover exceptions.

    :ivar value: description of the exception.
    """

    def __init__(self, value: Any) -> None:
        """Create a new instance of :class:`FailoverException` with the given description.

        :param value: description of the exception.
        """
        super(FailoverException, self).__init__(value)
        self.value = value


class ConfigParseError(FailoverException):
    """Any issue identified while loading or validating the configuration.

    Fatal for the invocation, raised before any side effect takes place.
    """

    pass


class ConnectionParamsError(ConfigParseError):
    """Connection parameters of a node are malformed (empty host, user or database)."""

    pass


class StoreError(FailoverException):
    """Reading or writing one of the persisted stores (primary config, topology cache) has failed."""

    pass


class ServiceError(FailoverException):
    """The dependent application service could not be started or stopped."""

    pass
