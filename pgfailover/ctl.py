"""Implement ``pgfailoverctl``: a command-line application to inspect and operate the failover monitor.

:var CONFIG_DIR_PATH: path to pgfailover configuration directory as per :func:`click.get_app_dir` output.
:var CONFIG_FILE_PATH: default path to ``pgfailover.yml`` configuration file.
"""
import json
import logging
import os

from contextlib import contextmanager
from typing import Any, Iterator, List

import click
import yaml

from prettytable import PrettyTable

from .config import Config
from .exceptions import FailoverException
from .monitor import FailoverMonitor
from .version import __version__

CONFIG_DIR_PATH = click.get_app_dir('pgfailover')
CONFIG_FILE_PATH = os.path.join(CONFIG_DIR_PATH, 'pgfailover.yml')


class PgFailoverCtlException(click.ClickException):
    """Raised upon issues faced by ``pgfailoverctl`` utility."""

    pass


def load_config(path: str) -> Config:
    """Load configuration file from *path*.

    :param path: path to the configuration file.

    :returns: the loaded configuration. Missing settings take their default values.

    :raises:
        :class:`PgFailoverCtlException`: if *path* does not exist or is not readable, or the configuration is invalid.
    """
    if not (os.path.exists(path) and os.access(path, os.R_OK)):
        if path != CONFIG_FILE_PATH:    # bail if non-default config location specified but file not found / readable
            raise PgFailoverCtlException('Provided config file {0} not existing or no read rights.'
                                         ' Check the -c/--config-file parameter'.format(path))
        else:
            logging.debug('Ignoring configuration file "%s". It does not exists or is not readable.', path)
    else:
        logging.debug('Loading configuration from file %s', path)
    try:
        return Config(path, validator=None)
    except FailoverException as e:
        raise PgFailoverCtlException(e.value)


def _get_monitor() -> FailoverMonitor:
    """Build the failover engine from the configuration of the current context."""
    config: Config = click.get_current_context().obj['__config']
    try:
        return FailoverMonitor.from_config(config)
    except FailoverException as e:
        raise PgFailoverCtlException(e.value)


@contextmanager
def failover_errors() -> Iterator[None]:
    """Turn :exc:`~pgfailover.exceptions.FailoverException` into a click error with exit code ``1``."""
    try:
        yield
    except FailoverException as e:
        raise PgFailoverCtlException(e.value)


def print_output(columns: List[str], rows: List[List[Any]], fmt: str = 'pretty', delimiter: str = '\t') -> None:
    """Print tabular information.

    :param columns: list of column names.
    :param rows: list of rows. Each item is a list of values for the columns.
    :param fmt: the printing format. Can be one among:

        * ``json``: to print as a JSON string -- array of objects;
        * ``yaml`` or ``yml``: to print as a YAML string;
        * ``tsv``: to print a table of separated values, by default by tab;
        * ``pretty``: to print a pretty table.
    :param delimiter: the character to be used as delimiter when *fmt* is ``tsv``.
    """
    if fmt in {'json', 'yaml', 'yml'}:
        elements = [dict(zip(columns, r)) for r in rows]
        if fmt == 'json':
            click.echo(json.dumps(elements))
        else:
            click.echo(yaml.safe_dump(elements, default_flow_style=False, allow_unicode=True).rstrip())
    elif fmt == 'tsv':
        for r in [columns] + rows:
            click.echo(delimiter.join(map(str, r)))
    else:
        table = PrettyTable(columns)
        table.align = 'l'
        for r in rows:
            table.add_row(r)
        click.echo(table)


option_format = click.option('--format', '-f', 'fmt', help='Output format', default='pretty',
                             type=click.Choice(['pretty', 'tsv', 'json', 'yaml', 'yml']))


@click.group(cls=click.Group)
@click.option('--config-file', '-c', help='Configuration file',
              envvar='PGFAILOVERCTL_CONFIG_FILE', default=CONFIG_FILE_PATH)
@click.pass_context
def ctl(ctx: click.Context, config_file: str) -> None:
    """Command-line interface for the pgfailover monitor.
    \f
    Entry point of ``pgfailoverctl`` utility.

    Load the configuration file.

    .. note::
        The log level, by default ``WARNING``, can be overridden through either of these environment variables:
            * ``LOGLEVEL``
            * ``PGFAILOVER_LOGLEVEL``

    :param ctx: click context to be passed to sub-commands.
    :param config_file: path to the configuration file.
    """
    level = 'WARNING'
    for name in ('LOGLEVEL', 'PGFAILOVER_LOGLEVEL'):
        level = os.environ.get(name, level)
    logging.basicConfig(format='%(asctime)s - %(levelname)s - %(message)s', level=level)
    ctx.obj = {'__config': load_config(config_file)}


@ctl.command('list', help='List cluster members from the topology cache')
@option_format
def list_members(fmt: str) -> None:
    """Process ``list`` command of ``pgfailoverctl`` utility.

    :param fmt: the output table printing format. See :func:`print_output` for available options.
    """
    monitor = _get_monitor()
    with failover_errors():
        members = monitor.topology.all_members()
    rows = [[m.host, m.user, m.dbname, m.role.value, m.active] for m in members]
    print_output(['Host', 'User', 'Database', 'Role', 'Active'], rows, fmt)


@ctl.command('show-primary', help='Show the primary the application is configured to use')
@option_format
def show_primary(fmt: str) -> None:
    """Process ``show-primary`` command of ``pgfailoverctl`` utility.

    .. note::
        The password is never printed.

    :param fmt: the output table printing format. See :func:`print_output` for available options.
    """
    monitor = _get_monitor()
    with failover_errors():
        params = monitor.primary_store.read()
    print_output(['Host', 'User', 'Database'], [[params.host, params.user, params.dbname]], fmt)


@ctl.command('refresh', help='Refresh the topology cache from the configured primary')
def refresh() -> None:
    """Process ``refresh`` command of ``pgfailoverctl`` utility."""
    monitor = _get_monitor()
    with failover_errors():
        params = monitor.primary_store.read()
        with monitor.probe.connection(params) as conn:
            if conn is None:
                raise PgFailoverCtlException('Primary {0} is not reachable'.format(params.host))
            changed = monitor.topology.refresh(conn)
        members = monitor.topology.all_members()
    click.echo('Topology cache {0} from {1}: {2} member(s)'.format('updated' if changed else 'is up to date',
                                                                  params.host, len(members)))


@ctl.command('check', help='Run one health-check/failover cycle')
@click.option('--force', is_flag=True, help='Do not ask for confirmation at any point')
def check(force: bool) -> None:
    """Process ``check`` command of ``pgfailoverctl`` utility.

    .. note::
        If the primary is not reachable the cycle stops the application and may point it to a new primary.

    :param force: if ``True`` skip the confirmation prompt.

    :raises:
        :class:`PgFailoverCtlException`: if the cycle failed or was aborted by an error.
    """
    from .__main__ import run_check

    if not force:
        click.confirm('The application may be stopped and reconfigured if the primary is lost. Continue?', abort=True)

    with failover_errors():
        outcome = run_check(click.get_current_context().obj['__config'])
    click.echo('Check finished: {0}'.format(outcome))
    if outcome.is_failed:
        raise PgFailoverCtlException('No new primary could be confirmed, the application stays stopped')


@ctl.command('version', help='Output version of pgfailoverctl command')
def version() -> None:
    """Process ``version`` command of ``pgfailoverctl`` utility."""
    click.echo('pgfailoverctl version {0}'.format(__version__))
