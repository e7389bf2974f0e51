"""Define general variables and functions for :mod:`pgfailover`.

:var PGFAILOVER_ENV_PREFIX: prefix for pgfailover related configuration environment variables.
:var MIN_PSYCOPG2: minimum version of :mod:`psycopg2` required by pgfailover to work.
:var MIN_PSYCOPG3: minimum version of :mod:`psycopg` required by pgfailover to work.
"""
from typing import Iterator, Tuple

PGFAILOVER_ENV_PREFIX = 'PGFAILOVER_'
MIN_PSYCOPG2 = (2, 7, 0)
MIN_PSYCOPG3 = (3, 0, 0)


def parse_version(version: str) -> Tuple[int, ...]:
    """Convert *version* from human-readable format to tuple of integers.

    :param version: human-readable software version, e.g. ``2.9.9 (dt dec pq3 ext lo64)``.

    :returns: tuple of *version* parts, each part as an integer.

    :Example:

        >>> parse_version('2.9.9 (dt dec pq3 ext lo64)')
        (2, 9, 9)
        >>> parse_version('3.1.0.dev1')
        (3, 1, 0)
    """
    def _parse_version(version: str) -> Iterator[int]:
        for e in version.split('.'):
            try:
                yield int(e)
            except ValueError:
                break
    return tuple(_parse_version(version.split(' ')[0]))
