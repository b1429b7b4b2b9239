"""Client session: one supervised R language server scoped to a folder."""

import asyncio
import enum
import logging
from typing import Callable, Iterable, List, Optional

from lsprotocol import types

from rlsp.config import LspSettings
from rlsp.errors import AbnormalExit, LaunchFailed, SessionError, StopTimeout
from rlsp.output import OutputChannel
from rlsp.servers.client import RLanguageClient
from rlsp.servers.launcher import LaunchSpec, ProcessLauncher, TransportMode
from rlsp.servers.transport import Channel, TransportNegotiator
from rlsp.utils.workspace import TextDocument

DEFAULT_KEY = "default"

# Time left to steps that must run after a forced kill
KILL_GRACE = 1.0

ClientFactory = Callable[[OutputChannel, LspSettings], RLanguageClient]


class SessionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class ClientSession:
    """Pairs one transport with one server process and supervises both.

    A session is started once and stopped once; a stopped session is never
    reused.
    """

    def __init__(
        self,
        key: str,
        cwd: str,
        settings: LspSettings,
        sink: OutputChannel,
        negotiator: Optional[TransportNegotiator] = None,
        client_factory: ClientFactory = RLanguageClient,
        on_terminated: Optional[Callable[["ClientSession"], None]] = None,
    ):
        """Initialize the session.

        Args:
            key: Workspace folder URI, or ``DEFAULT_KEY``.
            cwd: Working directory of the server process.
            settings: Current ``r.lsp`` settings.
            sink: Output channel for stderr and lifecycle notices.
            negotiator: Transport negotiator; built from ``settings`` if omitted.
            client_factory: Builds the protocol client attached to the channel.
            on_terminated: Called when the process dies without a stop request.
        """
        self.key = key
        self.cwd = cwd
        self.settings = settings
        self.sink = sink
        if negotiator is None:
            negotiator = TransportNegotiator(ProcessLauncher(), connect_timeout=settings.connect_timeout)
        self.negotiator = negotiator
        self.on_terminated = on_terminated
        self.logger = logging.getLogger("rlsp.servers.session")

        self.state = SessionState.UNINITIALIZED
        self.transport_mode: Optional[TransportMode] = None
        self.process: Optional[asyncio.subprocess.Process] = None
        self.channel: Optional[Channel] = None
        self.client: Optional[RLanguageClient] = None
        self.failure: Optional[SessionError] = None

        self._client_factory = client_factory
        self._watcher: Optional[asyncio.Task] = None
        self._handshake: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Task] = None
        self._release_task: Optional[asyncio.Task] = None
        self._queued_documents: List[TextDocument] = []

    @property
    def folder_uri(self) -> Optional[str]:
        return None if self.key == DEFAULT_KEY else self.key

    def __repr__(self) -> str:
        return f"ClientSession(key={self.key!r}, state={self.state.value})"

    async def start(self) -> "ClientSession":
        """Launch the server and connect the protocol client.

        Returns:
            The session, now running.

        Raises:
            BinaryNotFound: If the R binary cannot be resolved.
            LaunchFailed: If the server cannot be spawned or never connects.
            SessionError: If the session was already stopped.
        """
        if self.state is SessionState.RUNNING:
            return self
        if self.state is not SessionState.UNINITIALIZED:
            raise SessionError(f"Cannot start session {self.key} from state {self.state.value}")

        self.state = SessionState.STARTING
        self.logger.info(f"Starting R language server for {self.key} in {self.cwd}")

        try:
            spec = LaunchSpec.from_settings(self.settings, self.cwd)
            self.transport_mode = spec.mode
            transport = await self.negotiator.negotiate(spec)
            channel = await transport.open(on_spawn=self._on_spawn)
            if channel.process.returncode is not None:
                channel.close()
                raise LaunchFailed(
                    f"Language server exited with code {channel.process.returncode} during startup"
                )
        except SessionError as e:
            self.failure = e
            self.state = SessionState.STOPPED
            self.logger.error(f"Failed to start R language server for {self.key}: {e}")
            raise

        self.channel = channel
        self.client = self._client_factory(self.sink, self.settings)
        self.client.attach(channel.reader, channel.writer)
        self.state = SessionState.RUNNING
        self.logger.info(f"R language server for {self.key} running ({spec.mode.value})")

        self._handshake = asyncio.ensure_future(self._initialize())
        return self

    def _on_spawn(self, process: asyncio.subprocess.Process) -> None:
        self.process = process
        self._watcher = self.negotiator.launcher.supervise(
            process, self.sink, on_exit=self._on_exit, expected=lambda: self.state is not SessionState.RUNNING
        )

    def _on_exit(self, returncode: int) -> None:
        if self.state is not SessionState.RUNNING:
            return

        if returncode != 0:
            self.failure = AbnormalExit(returncode)
            self.logger.warning(f"{self.failure} for {self.key}")
        else:
            self.logger.info(f"R language server for {self.key} exited")

        self.state = SessionState.STOPPED
        self._release_task = asyncio.ensure_future(self._release())
        if self.on_terminated is not None:
            self.on_terminated(self)

    async def _initialize(self) -> None:
        try:
            await self.client.initialize(self.cwd, self.folder_uri)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._queued_documents.clear()
            self.logger.error(f"Initialize handshake with R language server for {self.key} failed: {e}")
            self.sink.append_line(f"Failed to initialize R language server: {e}")
            return

        queued, self._queued_documents = self._queued_documents, []
        for document in queued:
            self.open_document(document)

    async def wait_initialized(self) -> None:
        """Wait for the initialize handshake to finish (successfully or not)."""
        if self._handshake is not None:
            await asyncio.shield(self._handshake)

    def open_document(self, document: TextDocument) -> None:
        """Announce an opened document to the server.

        Documents opened before the initialize handshake completes are queued
        and sent right after it. Sessions that are not running ignore them.
        """
        if self.state is not SessionState.RUNNING:
            return
        if not self.client.initialized:
            if self._handshake is None or not self._handshake.done():
                self._queued_documents.append(document)
            return
        if self.client.did_open(document):
            self.logger.debug(f"Opened {document.uri} on R language server for {self.key}")

    def notify_watched_files(self, changes: Iterable[types.FileEvent]) -> None:
        """Forward file system changes to an initialized server."""
        if self.state is SessionState.RUNNING and self.client.initialized:
            self.client.did_change_watched_files(changes)

    async def stop(self) -> None:
        """Shut the server down gracefully.

        Idempotent; concurrent callers share one shutdown. Only a running
        session is stopped, other states return at once. Never raises:
        shutdown failures are logged.
        """
        if self._stop_task is None:
            if self.state is not SessionState.RUNNING:
                return
            self._stop_task = asyncio.ensure_future(self._stop())
        await asyncio.shield(self._stop_task)

    async def _stop(self) -> None:
        self.state = SessionState.STOPPING
        self.logger.info(f"Stopping R language server for {self.key}")

        # One stop_timeout covers the shutdown request and the wait for exit
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.stop_timeout

        def remaining(floor: float = 0.0) -> float:
            return max(deadline - loop.time(), floor)

        try:
            if self._handshake is not None and not self._handshake.done():
                self._handshake.cancel()

            try:
                await asyncio.wait_for(self.client.shutdown(), timeout=remaining())
            except asyncio.TimeoutError:
                self.logger.warning(f"R language server for {self.key} did not answer shutdown")
            except Exception as e:
                self.logger.warning(f"Shutdown request to R language server for {self.key} failed: {e}")

            await self._wait_for_exit(remaining)
            await self._release(remaining(KILL_GRACE))
        except Exception as e:
            self.logger.error(f"Error while stopping R language server for {self.key}: {e}")
        finally:
            self.state = SessionState.STOPPED
            self.logger.info(f"R language server for {self.key} stopped")

    async def _wait_for_exit(self, remaining: Callable[..., float]) -> None:
        process = self.process
        if process is None:
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=remaining())
        except asyncio.TimeoutError:
            error = StopTimeout(
                f"R language server for {self.key} did not exit within "
                f"{self.settings.stop_timeout:g}s, forcing kill"
            )
            self.logger.warning(str(error))
            self.sink.append_line(str(error))
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
            await process.wait()

        if self._watcher is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._watcher), timeout=remaining(KILL_GRACE))
            except asyncio.TimeoutError:
                self._watcher.cancel()

    async def _release(self, timeout: Optional[float] = None) -> None:
        if timeout is None:
            timeout = self.settings.stop_timeout
        if self.channel is not None:
            self.channel.close()
        if self.client is not None:
            try:
                await asyncio.wait_for(self.client.stop(), timeout=timeout)
            except asyncio.TimeoutError:
                self.logger.warning(f"Protocol client for {self.key} did not stop in time")
            except Exception as e:
                self.logger.error(f"Error while stopping protocol client for {self.key}: {e}")
