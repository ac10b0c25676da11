"""
Local status endpoint for a running tunnel.

Read-only: /health for liveness, /status for job counters and the
discovered models.
"""
from __future__ import annotations

from fastapi import FastAPI

from tunnel import logging_utils
from tunnel.runner import TunnelRunner


def create_app(runner: TunnelRunner) -> FastAPI:
    app = FastAPI(title="local-model-tunnel")

    @app.get("/health")
    async def health():
        return {
            "ok": not runner.stopping,
            "tunnel_id": logging_utils.TUNNEL_ID,
            "hostname": logging_utils.HOSTNAME,
        }

    @app.get("/status")
    async def status():
        return runner.status()

    return app
