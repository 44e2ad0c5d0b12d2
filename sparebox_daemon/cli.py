"""
CLI entry point: sparebox-daemon run | verify | config | version
argparse-based.
"""
from __future__ import annotations

import argparse
import sys


def _load(args):
    from sparebox_daemon.config import get_config, reload_config
    return reload_config(args.config) if args.config else get_config()


def cmd_run(args) -> None:
    """Foreground daemon (used by systemd / launchd)."""
    from sparebox_daemon.main import run_daemon
    run_daemon(_load(args))


def cmd_verify(args) -> None:
    from sparebox_daemon.main import run_verify
    if not run_verify(_load(args)):
        sys.exit(1)


def cmd_config(args) -> None:
    from sparebox_daemon.config import CONFIG_PATH
    cfg = _load(args)
    print("\nSparebox Daemon Configuration")
    print("=" * 40)
    print(f"  Config:    {args.config or CONFIG_PATH}")
    print(f"  API Key:   {cfg.masked_api_key()}")
    print(f"  Host ID:   {cfg.host_id or '(not set)'}")
    print(f"  API URL:   {cfg.api_url}")
    print(f"  Interval:  {cfg.heartbeat_interval_ms}ms")
    print(f"  Logs:      {cfg.log_dir or '(stdout only)'}")
    print(f"  Runtime:   {cfg.container_runtime or '(autodetect)'}")
    print(f"  Agent CLI: {cfg.agent_binary or '(autodetect)'}")
    print(f"  Agents:    {len(cfg.agents)}")
    print()


def cmd_version(args) -> None:
    from sparebox_daemon import __version__
    print(__version__)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="sparebox-daemon",
        description="Sparebox host daemon: heartbeats + agent chat relay",
    )
    parser.add_argument("--config", "-c", help="Path to config.yaml (default ~/.sparebox/config.yaml)")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("run", help="Start the daemon in the foreground (default)")
    sub.add_parser("verify", help="Dry run: check config, collect metrics, detect runtimes")
    sub.add_parser("config", help="Show effective configuration")
    sub.add_parser("version", help="Print version and exit")

    args = parser.parse_args(argv)

    dispatch = {
        "run":     cmd_run,
        "verify":  cmd_verify,
        "config":  cmd_config,
        "version": cmd_version,
    }

    try:
        dispatch.get(args.command, cmd_run)(args)
    except KeyboardInterrupt:
        print("\nStopped.")
    except Exception as exc:
        print(f"\n[Sparebox Error] {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
