"""Control loop owning the listening socket and hot configuration reload.

The loop serves one *generation* (configuration, engine, application and
listening socket) at a time. A reload request arrives on a single-slot queue;
the loop shuts the current server down, binds the new listen address and
starts serving the next generation. A bind failure is fatal for the first
generation only; afterwards the previous generation is restored, retrying
its bind until it succeeds. A reloaded configuration is written back to the
configuration file only once its listener is bound.
"""

from __future__ import annotations

import asyncio
import enum
import socket
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import FastAPI

from backup_gateway.api.lock import OperationLock
from backup_gateway.api.metrics import BackupMetrics
from backup_gateway.api.server import create_app
from backup_gateway.core.config import save_config_file
from backup_gateway.core.models import AppConfig
from backup_gateway.engines import BaseEngine, get_engine
from backup_gateway.logging import get_logger, setup_logging

log = get_logger(__name__)


class ServerState(enum.StrEnum):
    SERVING = "serving"
    RESTARTING = "restarting"


@dataclass
class Generation:
    """Everything that is rebuilt when the configuration changes."""

    config: AppConfig
    engine: BaseEngine
    sock: socket.socket | None = None
    app: FastAPI | None = field(default=None, repr=False)

    @property
    def address(self) -> tuple[str, int] | None:
        if self.sock is None or self.sock.fileno() == -1:
            return None
        return self.sock.getsockname()[:2]

    def close(self) -> None:
        if self.sock is not None:
            self.sock.close()


def bind_socket(config: AppConfig) -> socket.socket:
    host, port = config.api.host, config.api.port
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    return socket.create_server((host, port), family=family)


def uvicorn_server(app: FastAPI) -> uvicorn.Server:
    return uvicorn.Server(uvicorn.Config(app, log_config=None, access_log=False, lifespan="off"))


class ControlServer:
    """Run the REST control plane and apply configuration reloads."""

    def __init__(
            self,
            config: AppConfig,
            config_path: Path | None = None,
            engine_factory: Callable[[AppConfig], BaseEngine] = get_engine,
            server_factory: Callable[[FastAPI], Any] = uvicorn_server,
            bind: Callable[[AppConfig], socket.socket] = bind_socket,
            reconfigure_logging: bool = False,
            rebind_interval: float = 1.0,
    ) -> None:
        self.config_path = config_path
        self.lock = OperationLock()
        self.metrics = BackupMetrics()
        self.state = ServerState.SERVING
        self._initial_config = config
        self._engine_factory = engine_factory
        self._server_factory = server_factory
        self._bind = bind
        self._reconfigure_logging = reconfigure_logging
        self.rebind_interval = rebind_interval
        self._reloads: asyncio.Queue[AppConfig] = asyncio.Queue(maxsize=1)
        self._stop = asyncio.Event()
        self.generation: Generation | None = None

    def build_generation(self, config: AppConfig, bind: bool = True) -> Generation:
        """Create engine and app for *config*; bind its socket unless told not to."""
        generation = Generation(config=config, engine=self._engine_factory(config))
        generation.app = create_app(self, generation)
        if bind:
            generation.sock = self._bind(config)
        return generation

    async def request_reload(self, config: AppConfig) -> None:
        """Queue *config* for the control loop. Blocks while a reload is pending."""
        await self._reloads.put(config)

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        """Serve until :meth:`stop` is called or the server exits on its own."""
        self.generation = self.build_generation(self._initial_config)
        log.info("server_listening", listen_addr=self.generation.config.api.listen_addr)
        try:
            while True:
                if not await self._serve_until_reload():
                    return
        finally:
            self.generation.close()
            log.info("server_stopped")

    async def _serve_until_reload(self) -> bool:
        """Serve the current generation; return False when the loop should end."""
        generation = self.generation
        server = self._server_factory(generation.app)
        serve_task = asyncio.create_task(server.serve(sockets=[generation.sock]))
        reload_task = asyncio.create_task(self._reloads.get())
        stop_task = asyncio.create_task(self._stop.wait())

        done, _ = await asyncio.wait(
            {serve_task, reload_task, stop_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in (reload_task, stop_task):
            if task not in done:
                task.cancel()

        if serve_task in done:
            serve_task.result()
            if reload_task in done:
                log.warning("reload_dropped", reason="server exited")
            return False

        server.should_exit = True
        await serve_task
        generation.close()
        if stop_task in done:
            return False

        self.state = ServerState.RESTARTING
        log.info("server_restarting", previous=generation.config.api.listen_addr)
        next_generation = await self._next_generation(generation, reload_task.result())
        if next_generation is None:
            return False
        self.generation = next_generation
        self.state = ServerState.SERVING
        return True

    async def _next_generation(self, previous: Generation, config: AppConfig) -> Generation | None:
        try:
            generation = self.build_generation(config)
        except OSError as exc:
            log.error(
                "reload_bind_failed",
                listen_addr=config.api.listen_addr,
                error=str(exc),
            )
            return await self._restore_generation(previous.config)

        if self.config_path is not None:
            await self._save_config(config)
        if self._reconfigure_logging:
            setup_logging(
                level=config.logging.level,
                log_file=config.logging.log_file,
                log_format=config.logging.format,
            )
        log.info("server_listening", listen_addr=config.api.listen_addr)
        return generation

    async def _restore_generation(self, config: AppConfig) -> Generation | None:
        """Rebind *config* until it succeeds; None when stopped meanwhile."""
        while True:
            try:
                generation = self.build_generation(config)
            except OSError as exc:
                log.error(
                    "restore_bind_failed",
                    listen_addr=config.api.listen_addr,
                    error=str(exc),
                    retry_in=self.rebind_interval,
                )
                try:
                    await asyncio.wait_for(self._stop.wait(), self.rebind_interval)
                except TimeoutError:
                    continue
                return None
            log.info("server_listening", listen_addr=config.api.listen_addr, restored=True)
            return generation

    async def _save_config(self, config: AppConfig) -> None:
        try:
            await asyncio.to_thread(save_config_file, config, self.config_path)
        except OSError as exc:
            log.error("config_save_failed", path=str(self.config_path), error=str(exc))
            return
        log.info("config_saved", path=str(self.config_path))
