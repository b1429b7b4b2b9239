"""Launch specification and process supervision for the R language server."""

import asyncio
import enum
import logging
import os
import sys
from typing import Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from rlsp.config import LspSettings, resolve_rpath
from rlsp.errors import LaunchFailed, describe_exit
from rlsp.output import OutputChannel

logger = logging.getLogger("rlsp.servers.launcher")

DEFAULT_LANG = "en_US.UTF-8"
FIXED_FLAGS = ("--quiet", "--slave")
STDERR_CHUNK_SIZE = 4096


class TransportMode(str, enum.Enum):
    """How protocol messages reach the server process."""

    STDIO = "stdio"
    SOCKET = "socket"


def build_env(lang: str = "", base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Build the server environment.

    The server's output encoding follows the locale, so ``LANG`` is always set:
    the override wins, an inherited value is kept, otherwise a UTF-8 default
    is used.

    Args:
        lang: Locale override; empty means unset.
        base: Environment to inherit. Defaults to ``os.environ``.

    Returns:
        A new environment mapping.
    """
    env = dict(os.environ if base is None else base)
    if lang:
        env["LANG"] = lang
    elif "LANG" not in env:
        env["LANG"] = DEFAULT_LANG
    return env


def build_args(settings: LspSettings) -> List[str]:
    """Configured startup arguments followed by the quiet, non-interactive flags."""
    return [*settings.args, *FIXED_FLAGS]


def select_mode(settings: LspSettings, platform: str = sys.platform) -> TransportMode:
    """Pick the transport; stdio pipes to R block on Windows, so sockets are forced there."""
    if settings.use_stdio and platform != "win32":
        return TransportMode.STDIO
    return TransportMode.SOCKET


def server_expression(port: Optional[int] = None, debug: bool = False) -> str:
    """R expression that starts the language server.

    Args:
        port: Loopback port to connect back to; None for stdio.
        debug: Whether to enable verbose server-side logging.

    Returns:
        The expression passed to R with ``-e``.
    """
    options = []
    if port is not None:
        options.append(f"port={port}")
    if debug:
        options.append("debug=TRUE")
    return f"languageserver::run({','.join(options)})"


class LaunchSpec(BaseModel):
    """Everything needed to spawn one server process."""

    model_config = ConfigDict(frozen=True)

    path: str
    args: List[str]
    env: Dict[str, str]
    cwd: str
    mode: TransportMode
    debug: bool = False

    @classmethod
    def from_settings(
        cls,
        settings: LspSettings,
        cwd: str,
        base_env: Optional[Mapping[str, str]] = None,
        platform: str = sys.platform,
    ) -> "LaunchSpec":
        """Compute the launch spec for a session rooted at ``cwd``.

        Raises:
            BinaryNotFound: If the R binary cannot be resolved.
        """
        path = resolve_rpath(settings)
        env = build_env(settings.lang, base_env)
        if settings.debug:
            logger.debug(f"R binary: {path}")
            logger.debug(f"LANG: {env['LANG']}")
        return cls(
            path=path,
            args=build_args(settings),
            env=env,
            cwd=cwd,
            mode=select_mode(settings, platform),
            debug=settings.debug,
        )

    def describe(self) -> Dict[str, object]:
        """A printable summary; the inherited environment is reduced to LANG."""
        summary = self.model_dump(mode="json", exclude={"env"})
        summary["lang"] = self.env.get("LANG")
        return summary


class ProcessLauncher:
    """Spawns server processes and reports their lifecycle to an output channel."""

    async def launch(self, spec: LaunchSpec, args: List[str], stdio: bool) -> asyncio.subprocess.Process:
        """Spawn the server binary.

        Args:
            spec: Launch spec providing binary, working directory and environment.
            args: Final argument list, including the startup expression.
            stdio: Whether stdin/stdout carry the protocol.

        Returns:
            The running process; stderr is always piped.

        Raises:
            LaunchFailed: If the process cannot be spawned.
        """
        stream = asyncio.subprocess.PIPE if stdio else asyncio.subprocess.DEVNULL
        logger.info(f"Starting R language server: {spec.path} {' '.join(args)}")
        try:
            process = await asyncio.create_subprocess_exec(
                spec.path,
                *args,
                cwd=spec.cwd,
                env=spec.env,
                stdin=stream,
                stdout=stream,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Failed to spawn R language server: {e}")
            raise LaunchFailed(f"Failed to spawn {spec.path}: {e}") from e

        logger.debug(f"R language server running with pid {process.pid}")
        return process

    def supervise(
        self,
        process: asyncio.subprocess.Process,
        sink: OutputChannel,
        on_exit: Optional[Callable[[int], None]] = None,
        expected: Callable[[], bool] = lambda: False,
    ) -> "asyncio.Task[int]":
        """Forward stderr to ``sink`` and report the exit once.

        Args:
            process: Process returned by :meth:`launch`.
            sink: Output channel receiving stderr chunks and the exit notice.
            on_exit: Called with the return code after the exit notice.
            expected: Whether an exit now is expected (a stop was requested, or the
                caller reports startup failures itself). Expected exits are
                written to ``sink`` but never shown.

        Returns:
            Task resolving to the return code.
        """
        return asyncio.ensure_future(self._watch(process, sink, on_exit, expected))

    async def _watch(self, process, sink, on_exit, expected) -> int:
        if process.stderr is not None:
            while True:
                chunk = await process.stderr.read(STDERR_CHUNK_SIZE)
                if not chunk:
                    break
                sink.append_line(chunk.decode("utf-8", errors="replace"))

        returncode = await process.wait()
        sink.append_line(f"Language server exited {describe_exit(returncode)}")
        if returncode != 0 and not expected():
            sink.show()

        if on_exit is not None:
            on_exit(returncode)
        return returncode
