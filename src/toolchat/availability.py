"""Reachability probing and on-demand launch for self-hosted backends."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
import logging
import os
import sys
from typing import TYPE_CHECKING

import httpx

from .exceptions import ModelNotFoundError

if TYPE_CHECKING:
    from .backends.ollama_backend import OllamaBackend

LOGGER = logging.getLogger(__name__)

DEFAULT_EXECUTABLE = "ollama"


def launch_command(ollama_path: str = "", platform: str | None = None) -> list[str]:
    """Return the argv that starts the backend server in the background."""
    executable = ollama_path.strip() or DEFAULT_EXECUTABLE
    if (platform or sys.platform).startswith("win"):
        return ["cmd", "/c", "start", "", executable, "serve"]
    return [executable, "serve"]


def model_name_matches(requested_model: str, available_model: str) -> bool:
    requested = requested_model.strip().lower()
    available = available_model.strip().lower()
    if requested == available:
        return True
    if ":" not in requested and available.startswith(f"{requested}:"):
        return True
    return False


class BackendAvailabilityManager:
    """Probe a local backend and start it when it is not answering.

    ``ensure_available`` is retry-with-deadline: one launch, then polling
    every ``poll_interval`` seconds until ``deadline`` elapses. Concurrent
    callers for the same endpoint share a single launch and its result, so a
    failed launch is reported to all of them at once. Callers treat ``False``
    as terminal for the turn. The launched server is detached and outlives
    the manager.
    """

    def __init__(
        self,
        ollama_path: str = "",
        probe_timeout: float = 2.0,
        poll_interval: float = 0.9,
        deadline: float = 12.0,
        probe: Callable[[str], Awaitable[bool]] | None = None,
        launcher: Callable[[Sequence[str]], Awaitable[bool]] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.ollama_path = ollama_path
        self.probe_timeout = probe_timeout
        self.poll_interval = poll_interval
        self.deadline = deadline
        self._probe_override = probe
        self._launcher = launcher or self._spawn
        self._transport = transport
        self._launches: dict[str, asyncio.Future[bool]] = {}

    async def probe(self, base_url: str) -> bool:
        """Return whether the model-list endpoint answers successfully."""
        if self._probe_override is not None:
            return await self._probe_override(base_url)
        url = f"{base_url.rstrip('/')}/api/tags"
        try:
            async with httpx.AsyncClient(
                timeout=self.probe_timeout, transport=self._transport
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError:
            return False
        return response.is_success

    async def _spawn(self, argv: Sequence[str]) -> bool:
        try:
            await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=(os.name != "nt"),
            )
        except OSError as exc:
            LOGGER.warning(
                "availability.launch.failed",
                extra={
                    "event": "availability.launch.failed",
                    "command": list(argv),
                    "error": str(exc),
                },
            )
            return False
        return True

    async def _poll_until_ready(self, base_url: str) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.deadline
        while loop.time() < deadline:
            await asyncio.sleep(self.poll_interval)
            if await self.probe(base_url):
                return True
        return False

    async def _launch_and_wait(self, base_url: str) -> bool:
        argv = launch_command(self.ollama_path)
        LOGGER.info(
            "availability.launch",
            extra={"event": "availability.launch", "base_url": base_url, "command": argv},
        )
        ready = False
        if await self._launcher(argv):
            ready = await self._poll_until_ready(base_url)
        LOGGER.info(
            "availability.result",
            extra={"event": "availability.result", "base_url": base_url, "ready": ready},
        )
        return ready

    def _forget_launch(self, base_url: str, launch: asyncio.Future[bool]) -> None:
        if self._launches.get(base_url) is launch:
            del self._launches[base_url]

    async def ensure_available(self, base_url: str) -> bool:
        """Probe, launch once if needed, then poll until ready or the deadline."""
        if await self.probe(base_url):
            return True

        launch = self._launches.get(base_url)
        if launch is None:
            launch = asyncio.ensure_future(self._launch_and_wait(base_url))
            self._launches[base_url] = launch
            launch.add_done_callback(lambda done: self._forget_launch(base_url, done))
        else:
            # Another turn is already launching this backend; share its outcome.
            LOGGER.info(
                "availability.wait_for_launch",
                extra={"event": "availability.wait_for_launch", "base_url": base_url},
            )
        return await asyncio.shield(launch)

    async def ensure_model(
        self,
        backend: OllamaBackend,
        model: str,
        pull_if_missing: bool = True,
    ) -> bool:
        """Ensure ``model`` is listed by the backend, pulling it once if allowed."""
        if not model:
            return True
        available = await backend.list_models()
        if any(model_name_matches(model, name) for name in available):
            return True
        if not pull_if_missing:
            raise ModelNotFoundError(f"Model {model!r} is not available.")

        LOGGER.info(
            "availability.model.pull",
            extra={"event": "availability.model.pull", "model": model},
        )
        await backend.pull_model(model)
        return True
