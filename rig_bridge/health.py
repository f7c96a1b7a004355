"""Health reporting for the running bridge."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from aiohttp import web

from . import __version__, constants

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Tracks the status of the MQTT link, the rig and the dispatcher."""

    def __init__(self) -> None:
        self._status: Dict[str, ComponentStatus] = {}
        self._agent_state: Optional[ComponentStatus] = None
        self._lock = asyncio.Lock()

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._status[name] = ComponentStatus(
                name=name, healthy=healthy, detail=detail
            )

    async def set_agent_state(self, state: str, *, healthy: bool) -> None:
        async with self._lock:
            self._agent_state = ComponentStatus(
                name="agent", healthy=healthy, detail=state
            )

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components = [status.as_dict() for status in self._status.values()]
            agent_state = self._agent_state

        healthy = all(item["healthy"] for item in components)
        if agent_state is not None and not agent_state.healthy:
            healthy = False

        payload: Dict[str, object] = {
            "service": constants.APP_NAME,
            "version": __version__,
            "status": "ok" if healthy else "degraded",
            "components": components,
        }
        if agent_state is not None:
            payload["agentState"] = {
                "state": agent_state.detail,
                "healthy": agent_state.healthy,
                "updatedAt": agent_state.updated_at.isoformat(timespec="seconds"),
            }
        return payload


class HealthServer:
    """Minimal HTTP server exposing `/healthz` for supervisors."""

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info(
            "Health endpoint listening on http://%s:%s/healthz", self._host, self._port
        )

    async def stop(self) -> None:
        if self._site is not None:
            try:
                await self._site.stop()
            except RuntimeError as exc:
                LOGGER.warning("Failed to stop health endpoint: %s", exc)
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)
