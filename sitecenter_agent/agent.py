#!/usr/bin/env python3
"""
Collector entry point - one short-lived run per scheduler tick.
"""

import logging
import sys
import time
from typing import Callable, Optional

import click

from logcore import setup_logging
from sitecenter_agent import __version__
from sitecenter_agent.collectors import SystemSampler
from sitecenter_agent.config import (
    VARIANT_CONTAINER,
    AgentSettings,
    ConfigError,
    Credentials,
    EnvFileStore,
    UsageError,
    load_settings,
    resolve_credentials,
)
from sitecenter_agent.control import (
    RunGuard,
    RuntimeLimitExceeded,
    StateController,
    limit_cpu_time,
    runtime_limit,
)
from sitecenter_agent.payload import build_payload, to_json
from sitecenter_agent.rates import (
    CONTAINER_STATE_PREFIX,
    HOST_STATE_PREFIX,
    RateState,
    RateStateStore,
    compute_rates,
)
from sitecenter_agent.reporter import Reporter, ReportOutcome
from sitecenter_agent.sources import LinuxMetricsSource

logger = logging.getLogger('sitecenter_agent')


class CollectorRun:
    """Gate, sample, compute rates, report - at most one POST per run"""

    def __init__(
        self,
        credentials: Credentials,
        settings: AgentSettings,
        controller: StateController,
        sampler: Optional[SystemSampler] = None,
        reporter: Optional[Reporter] = None,
        rate_store: Optional[RateStateStore] = None,
        guard: Optional[RunGuard] = None,
        delay: bool = True,
        dry_run: bool = False,
        clock: Callable[[], float] = time.time
    ):
        self.credentials = credentials
        self.settings = settings
        self.controller = controller
        self.delay = delay
        self.dry_run = dry_run
        self.clock = clock

        self.sampler = sampler or SystemSampler(
            LinuxMetricsSource(),
            variant=settings.variant,
            memory_limit=settings.memory_limit,
            external_ip_services=settings.external_ip_services,
            external_ip_timeout=settings.external_ip_timeout,
        )
        self.reporter = reporter or Reporter(
            credentials,
            controller,
            base_url=settings.base_url,
            variant=settings.variant,
            timeout=settings.request_timeout,
            send_delay_max=settings.send_delay_max,
            pause_seconds=settings.pause_seconds,
        )

        prefix = CONTAINER_STATE_PREFIX if settings.variant == VARIANT_CONTAINER else HOST_STATE_PREFIX
        self.rate_store = rate_store or RateStateStore(settings.state_dir, credentials.monitor, prefix=prefix)
        self.guard = guard or RunGuard(settings.state_dir, credentials.monitor)

    def run(self) -> int:
        """Execute one invocation and return the process exit code"""
        decision = self.controller.check()
        if not decision.proceed:
            return 0

        with self.guard as acquired:
            if not acquired:
                return 0
            return self._collect_and_report()

    def _collect_and_report(self) -> int:
        snapshot = self.sampler.collect()

        net = snapshot.net
        current = RateState(
            timestamp=int(self.clock()),
            rx_bytes=net.rx_bytes,
            tx_bytes=net.tx_bytes,
            rx_packets=net.rx_packets,
            tx_packets=net.tx_packets,
        )
        previous = self.rate_store.load()
        rates = compute_rates(
            current,
            previous,
            capacity_mbps=snapshot.interface_speed_mbps,
            window=(self.settings.rate_window_min, self.settings.rate_window_max),
        )
        # state rotates whether or not the report succeeds
        self.rate_store.save(current)

        payload = build_payload(snapshot, rates, self.settings.variant)

        if self.dry_run:
            click.echo(to_json(payload))
            return 0

        outcome = self.reporter.send_stats(payload, delay=self.delay)
        if outcome is ReportOutcome.INVALID_SECRET:
            return 1
        return 0


def _configure(verbose: bool, plain_logs: bool, settings_path: Optional[str]) -> AgentSettings:
    setup_logging('sitecenter_agent', verbose=verbose, use_json=not plain_logs)
    try:
        return load_settings(settings_path)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(e.exit_code)


def _credentials_or_exit(credentials: Credentials, usage: str) -> Credentials:
    try:
        return credentials.require(usage)
    except UsageError as e:
        click.echo(str(e), err=True)
        sys.exit(e.exit_code)


common_options = [
    click.option('--env-file', type=click.Path(dir_okay=False), default=None,
                 help='Credentials/control-flag env file'),
    click.option('--settings', 'settings_path', type=click.Path(dir_okay=False), default=None,
                 envvar='SITECENTER_AGENT_SETTINGS', help='Path to agent settings YAML'),
    click.option('--container', is_flag=True, help='Report as a container (app-stats)'),
    click.option('--verbose', '-v', is_flag=True, help='Debug diagnostics on stderr'),
    click.option('--plain-logs', is_flag=True, help='Human-readable diagnostics instead of JSON'),
]


def with_common_options(func):
    for option in reversed(common_options):
        func = option(func)
    return func


@click.command()
@click.argument('account', required=False)
@click.argument('monitor', required=False)
@click.argument('secret', required=False)
@with_common_options
@click.option('--no-delay', is_flag=True, help='Skip the randomized send delay')
@click.option('--dry-run', is_flag=True, help='Print the payload to stdout instead of sending it')
def report(account, monitor, secret, env_file, settings_path, container, verbose, plain_logs, no_delay, dry_run):
    """Collect system stats and send them to the monitor once."""
    settings = _configure(verbose, plain_logs, settings_path)
    if container:
        settings.variant = VARIANT_CONTAINER
    if env_file:
        settings.env_file = env_file

    store = EnvFileStore(settings.resolved_env_file())
    credentials = _credentials_or_exit(
        resolve_credentials(store, account, monitor, secret),
        'sitecenter-agent report ACCOUNT_CODE MONITOR_CODE SECRET_CODE'
    )

    run = CollectorRun(
        credentials,
        settings,
        StateController(store),
        delay=not no_delay,
        dry_run=dry_run,
    )

    limit_cpu_time(settings.max_runtime)
    try:
        with runtime_limit(settings.max_runtime):
            exit_code = run.run()
    except RuntimeLimitExceeded as e:
        logger.error(str(e))
        exit_code = e.exit_code
    sys.exit(exit_code)


@click.command()
@click.argument('account', required=False)
@click.argument('monitor', required=False)
@click.argument('alive_code', required=False)
@with_common_options
def heartbeat(account, monitor, alive_code, env_file, settings_path, container, verbose, plain_logs):
    """Send a liveness ping (no metrics)."""
    settings = _configure(verbose, plain_logs, settings_path)
    if container:
        settings.variant = VARIANT_CONTAINER
    if env_file:
        settings.env_file = env_file

    store = EnvFileStore(settings.resolved_env_file())
    credentials = _credentials_or_exit(
        resolve_credentials(store, account, monitor, alive_code),
        'sitecenter-agent heartbeat ACCOUNT_CODE MONITOR_CODE ALIVE_CODE'
    )

    reporter = Reporter(
        credentials,
        StateController(store),
        base_url=settings.base_url,
        timeout=settings.request_timeout,
    )
    exit_code = 0
    try:
        with runtime_limit(settings.max_runtime):
            reporter.send_heartbeat(credentials.secret)
    except RuntimeLimitExceeded as e:
        logger.error(str(e))
        exit_code = e.exit_code
    sys.exit(exit_code)


@click.group()
@click.version_option(__version__)
def main():
    """SiteCenter host/container stats agent."""


main.add_command(report)
main.add_command(heartbeat)


if __name__ == '__main__':
    main()
