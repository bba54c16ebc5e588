"""
Routing backends - the proxy layer that carries application connections.

The TrafficRouter owns the decision of which environment is live. A
RoutingBackend makes that decision effective outside the process, for
example by rewriting a proxy's upstream block and reloading the proxy.

UpstreamFileBackend renders an nginx-style stream upstream:

    # schemaswitch active=green
    upstream database {
        server postgres-green:5432 max_fails=3 fail_timeout=30s;
    }
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Protocol, runtime_checkable

from schemaswitch.exceptions import RoutingBackendError
from schemaswitch.models import EnvironmentName

logger = logging.getLogger(__name__)

DEFAULT_HOSTS: Mapping[EnvironmentName, str] = {
    EnvironmentName.BLUE: "postgres-blue:5432",
    EnvironmentName.GREEN: "postgres-green:5432",
}

_MARKER_PATTERN = re.compile(r"^# schemaswitch active=(blue|green)\s*$", re.MULTILINE)


@runtime_checkable
class RoutingBackend(Protocol):
    """External routing layer driven by the TrafficRouter."""

    async def apply(self, environment: EnvironmentName) -> None:
        """
        Point the routing layer at ``environment``.

        Raises:
            RoutingBackendError: If the change was refused; the previous
                routing must remain in effect.
        """
        ...

    async def current(self) -> EnvironmentName | None:
        """Return the environment the routing layer reports, or None if unknown."""
        ...


class UpstreamFileBackend:
    """
    Rewrites a proxy upstream file and optionally validates and reloads the proxy.

    The file is replaced atomically. When validation or reload fails the
    previous file content is put back and RoutingBackendError is raised.

    Args:
        path: Upstream configuration file
        hosts: ``host:port`` per environment
        upstream_name: Name of the upstream block
        validate_command: Command run after writing, e.g. ``["nginx", "-t"]``
        reload_command: Command run after validation, e.g. ``["nginx", "-s", "reload"]``
        command_timeout: Deadline in seconds for each command
    """

    def __init__(
        self,
        path: str | Path,
        hosts: Mapping[EnvironmentName, str] | None = None,
        upstream_name: str = "database",
        validate_command: Sequence[str] | None = None,
        reload_command: Sequence[str] | None = None,
        command_timeout: float = 10.0,
    ) -> None:
        self._path = Path(path)
        self._hosts = dict(hosts or DEFAULT_HOSTS)
        missing = [env.value for env in EnvironmentName if env not in self._hosts]
        if missing:
            raise ValueError(f"No upstream host configured for: {', '.join(missing)}")
        self._upstream_name = upstream_name
        self._validate_command = list(validate_command) if validate_command else None
        self._reload_command = list(reload_command) if reload_command else None
        self._command_timeout = command_timeout

    @property
    def path(self) -> Path:
        return self._path

    def render(self, environment: EnvironmentName) -> str:
        """Render the upstream file content for ``environment``."""
        return (
            f"# schemaswitch active={environment.value}\n"
            f"upstream {self._upstream_name} {{\n"
            f"    server {self._hosts[environment]} max_fails=3 fail_timeout=30s;\n"
            "}\n"
        )

    async def apply(self, environment: EnvironmentName) -> None:
        previous = await asyncio.to_thread(self._read)
        await asyncio.to_thread(self._write, self.render(environment))

        try:
            if self._validate_command:
                await self._run(self._validate_command, "validation", environment)
            if self._reload_command:
                await self._run(self._reload_command, "reload", environment)
        except RoutingBackendError:
            await asyncio.to_thread(self._put_back, previous)
            raise

        logger.info(
            "Upstream %s now points at %s",
            self._upstream_name,
            environment.value,
            extra={"path": str(self._path), "host": self._hosts[environment]},
        )

    async def current(self) -> EnvironmentName | None:
        content = await asyncio.to_thread(self._read)
        if content is None:
            return None
        match = _MARKER_PATTERN.search(content)
        return EnvironmentName(match.group(1)) if match else None

    async def _run(self, command: list[str], step: str, environment: EnvironmentName) -> None:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._command_timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise RoutingBackendError(
                f"Proxy {step} timed out after {self._command_timeout:.1f}s",
                target=environment,
                reason="timeout",
            ) from None

        if proc.returncode != 0:
            output = stderr.decode(errors="replace").strip()
            logger.error(
                "Proxy %s failed with exit code %s: %s", step, proc.returncode, output
            )
            raise RoutingBackendError(
                f"Proxy {step} failed (exit {proc.returncode}): {output}",
                target=environment,
                reason=output or None,
            )

    def _read(self) -> str | None:
        try:
            return self._path.read_text()
        except FileNotFoundError:
            return None

    def _write(self, content: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(content)
        os.replace(tmp, self._path)

    def _put_back(self, previous: str | None) -> None:
        if previous is None:
            self._path.unlink(missing_ok=True)
        else:
            self._write(previous)


__all__ = ["DEFAULT_HOSTS", "RoutingBackend", "UpstreamFileBackend"]
