"""
Command-line entry point.

    local-model-tunnel [run]        discover models, sync, poll until SIGINT/SIGTERM
    local-model-tunnel models       list models from running providers
    local-model-tunnel verify       check the configured API key
"""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

import httpx
import uvicorn

from tunnel.config import TunnelConfig, load_config
from tunnel.errors import TunnelError
from tunnel.logging_utils import init_logging
from tunnel.providers.registry import all_providers, discover_all_models
from tunnel.queue_api import QueueClient
from tunnel.runner import TunnelRunner
from tunnel.status_app import create_app

log = logging.getLogger("tunnel.main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="local-model-tunnel", description="Serve local models to a remote job queue.")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    parser.add_argument("--environment", choices=["prod", "local"], default=None)
    parser.add_argument("--status-port", type=int, default=None, help="Expose /health and /status on this port")
    parser.add_argument("command", nargs="?", default="run", choices=["run", "models", "verify"])
    return parser


class StatusServer(uvicorn.Server):
    """uvicorn server that leaves SIGINT/SIGTERM to the runner."""

    def install_signal_handlers(self) -> None:
        return None

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def _install_signal_handlers(runner: TunnelRunner) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runner.stop)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(runner.stop))


def queue_for(cfg: TunnelConfig) -> QueueClient:
    # The read timeout has to outlast the server side of a long poll
    timeout = httpx.Timeout(connect=5.0, read=cfg.runner.poll_timeout_s, write=30.0, pool=10.0)
    return QueueClient(cfg.api_base_url, cfg.api_key, timeout=timeout)


async def run_tunnel(cfg: TunnelConfig) -> int:
    providers = all_providers(cfg)
    async with queue_for(cfg) as queue:
        runner = TunnelRunner(queue, providers, cfg.runner)
        _install_signal_handlers(runner)

        server_task = None
        server = None
        if cfg.runner.status_port:
            server = StatusServer(uvicorn.Config(
                create_app(runner),
                host=cfg.runner.status_host,
                port=cfg.runner.status_port,
                log_level="warning",
            ))
            server_task = asyncio.create_task(server.serve())
            log.info("Status endpoint on http://%s:%d/status", cfg.runner.status_host, cfg.runner.status_port)

        try:
            await runner.run()
        finally:
            if server is not None:
                server.should_exit = True
                await asyncio.gather(server_task, return_exceptions=True)
    return 0


async def list_models(cfg: TunnelConfig) -> int:
    models = await discover_all_models(all_providers(cfg))
    if not models:
        print("No local models found.")
        return 1
    for m in models:
        extra = m.status_hint or m.parameter_size or ""
        print(f"{m.name:48} {m.provider:18} {m.capability:6} {extra}")
    return 0


async def verify(cfg: TunnelConfig) -> int:
    async with queue_for(cfg) as queue:
        ok = await queue.verify_api_key()
    print("API key OK" if ok else "API key rejected")
    return 0 if ok else 1


COMMANDS = {"run": run_tunnel, "models": list_models, "verify": verify}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = load_config(args.config)
    if args.environment:
        cfg.environment = args.environment
    if args.status_port is not None:
        cfg.runner.status_port = args.status_port

    init_logging(tunnel_id=cfg.environment)
    try:
        return asyncio.run(COMMANDS[args.command](cfg))
    except TunnelError as e:
        log.error("%s", e.message)
        return 1


if __name__ == "__main__":
    sys.exit(main())
