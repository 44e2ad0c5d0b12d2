"""
Daemon wiring: config → registry → dispatcher → heartbeat engine.
run_daemon() blocks until SIGTERM/SIGINT or an auth failure stops the engine.
run_verify() is the dry run behind `sparebox-daemon verify`.
"""
from __future__ import annotations

import asyncio
import signal

from sparebox_daemon import __version__
from sparebox_daemon.agents.dispatcher import MessageDispatcher
from sparebox_daemon.agents.registry import AgentRegistry
from sparebox_daemon.agents.runtime import RuntimeLocator
from sparebox_daemon.config import ConfigError, DaemonConfig, get_config
from sparebox_daemon.core.heartbeat import EngineState, HeartbeatEngine
from sparebox_daemon.core.metrics import DISK_UNKNOWN, MetricsCollector
from sparebox_daemon.core.replies import PendingReplies
from sparebox_daemon.core.transport import ReportTransport
from sparebox_daemon.utils.logger import get_logger, setup_logging

log = get_logger("main")

SHUTDOWN_GRACE_SECONDS = 2


class Daemon:
    def __init__(self, config: DaemonConfig) -> None:
        self.config = config
        self.registry = AgentRegistry.from_config(config.agents)
        self.replies = PendingReplies()
        self.locator = RuntimeLocator(
            container_runtime=config.container_runtime,
            agent_binary=config.agent_binary,
        )
        self.dispatcher = MessageDispatcher(self.registry, self.replies, locator=self.locator)
        self.engine = HeartbeatEngine(
            collector=MetricsCollector(),
            transport=ReportTransport(config.api_url, config.api_key),
            dispatcher=self.dispatcher,
            replies=self.replies,
            daemon_version=__version__,
            default_interval_ms=config.heartbeat_interval_ms,
        )

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.shutdown, sig)
            except (NotImplementedError, RuntimeError):
                # Windows: fall back to the default handler (KeyboardInterrupt)
                pass

        log.info("Starting heartbeat loop...")
        self.engine.start()
        await self.engine.wait_stopped()

        if self.dispatcher.in_flight:
            log.info("Waiting up to %ds for %d in-flight message(s)",
                     SHUTDOWN_GRACE_SECONDS, self.dispatcher.in_flight)
            await self.dispatcher.wait_idle(timeout=SHUTDOWN_GRACE_SECONDS)
        log.info("Daemon stopped")

    def shutdown(self, sig: signal.Signals | None = None) -> None:
        if self.engine.state is EngineState.STOPPED:
            return
        log.info("Received %s - shutting down gracefully", sig.name if sig else "stop")
        self.engine.stop()


def run_daemon(config: DaemonConfig | None = None) -> None:
    cfg = config or get_config()
    setup_logging(cfg.log_level, cfg.log_dir or None)
    log.info("Sparebox Daemon v%s starting", __version__)

    errors = cfg.validate()
    if errors:
        for e in errors:
            log.error(e)
        raise ConfigError("Cannot start: fix configuration and try again.")

    log.info("Host ID: %s", cfg.host_id)
    log.info("API URL: %s", cfg.api_url)
    log.info("Heartbeat interval: %ds", cfg.heartbeat_interval_ms // 1000)

    daemon = Daemon(cfg)
    log.info("Tracked agents: %d", len(daemon.registry))
    asyncio.run(daemon.run())


async def _verify(cfg: DaemonConfig) -> bool:
    from sparebox_daemon.utils.output import (
        print_banner, print_fail, print_field, print_ok, print_section, print_status,
    )

    print_banner("Verify Mode", __version__)

    print_section("Configuration")
    errors = cfg.validate()
    print_field("API Key", cfg.masked_api_key())
    print_field("Host ID", cfg.host_id or "(not set)")
    print_field("API URL", cfg.api_url)
    print_field("Interval", f"{cfg.heartbeat_interval_ms}ms")
    if errors:
        print_section("Config Errors")
        for e in errors:
            print_fail(e)
    else:
        print_ok("Config valid")

    print_section("System Metrics")
    print_status("Collecting CPU usage (1s sample)...")
    collector = MetricsCollector()
    cpu, disk = await asyncio.gather(collector.sample_cpu_usage(), collector.disk_usage())
    print_field("CPU", f"{cpu}%")
    print_field("RAM", f"{collector.ram_usage()}%")
    print_field("Disk", "N/A (could not determine)" if disk == DISK_UNKNOWN else f"{disk}%")
    print_field("OS", collector.os_info)
    print_field("CPU Model", f"{collector.cpu_model} ({collector.cpu_cores} cores)")
    print_field("Total RAM", f"{collector.total_ram_gb} GB")

    print_section("Agent Runtimes")
    locator = RuntimeLocator(cfg.container_runtime, cfg.agent_binary)
    runtime = await locator.container_runtime()
    binary = await locator.agent_binary()
    print_field("Container", runtime or "none")
    print_field("Agent CLI", " ".join(binary) if binary else "not found")
    print_field("Agents", len(cfg.agents))

    print_section("Ready")
    if errors:
        print_fail("Fix config errors above before starting the daemon.")
        return False
    print_ok("All checks passed. Run without 'verify' to start the daemon.")
    return True


def run_verify(config: DaemonConfig | None = None) -> bool:
    cfg = config or get_config()
    return asyncio.run(_verify(cfg))
