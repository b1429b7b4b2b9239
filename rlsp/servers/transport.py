"""Transport negotiation between the session manager and a server process."""

import abc
import asyncio
import logging
from typing import Callable, List, Optional, Tuple

from rlsp.errors import LaunchFailed, describe_exit
from rlsp.servers.launcher import LaunchSpec, ProcessLauncher, TransportMode, server_expression

logger = logging.getLogger("rlsp.servers.transport")

LOOPBACK = "127.0.0.1"

SpawnCallback = Callable[[asyncio.subprocess.Process], None]


class Channel:
    """Duplex byte channel to a running server process."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        mode: TransportMode,
    ):
        self.process = process
        self.reader = reader
        self.writer = writer
        self.mode = mode

    def close(self) -> None:
        """Close the write side; the server sees EOF."""
        if not self.writer.is_closing():
            self.writer.close()


class PreparedTransport(abc.ABC):
    """A negotiated transport: final arguments plus a way to open the channel."""

    def __init__(self, spec: LaunchSpec, launcher: ProcessLauncher):
        self.spec = spec
        self.launcher = launcher
        self.args: List[str] = list(spec.args)

    @property
    @abc.abstractmethod
    def mode(self) -> TransportMode:
        """The transport mode."""

    @abc.abstractmethod
    async def open(self, on_spawn: Optional[SpawnCallback] = None) -> Channel:
        """Spawn the server and establish the channel.

        Args:
            on_spawn: Called with the process as soon as it is spawned.

        Returns:
            The established channel.

        Raises:
            LaunchFailed: If the process cannot be spawned or never connects.
        """

    def close(self) -> None:
        """Release any resource held before :meth:`open` completes."""


class StdioTransport(PreparedTransport):
    """The server's standard streams carry the protocol."""

    def __init__(self, spec: LaunchSpec, launcher: ProcessLauncher):
        super().__init__(spec, launcher)
        self.args.extend(["-e", server_expression(None, spec.debug)])

    @property
    def mode(self) -> TransportMode:
        return TransportMode.STDIO

    async def open(self, on_spawn: Optional[SpawnCallback] = None) -> Channel:
        process = await self.launcher.launch(self.spec, self.args, stdio=True)
        if on_spawn is not None:
            on_spawn(process)
        return Channel(process, process.stdout, process.stdin, self.mode)


class SocketTransport(PreparedTransport):
    """The server connects back to a loopback listener whose port it gets as an argument.

    Exactly one connection is accepted; the listener is closed right after,
    or as soon as the attempt fails.
    """

    def __init__(self, spec: LaunchSpec, launcher: ProcessLauncher, connect_timeout: float):
        super().__init__(spec, launcher)
        self.connect_timeout = connect_timeout
        self.port: Optional[int] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._accepted: Optional["asyncio.Future[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]"] = None

    @property
    def mode(self) -> TransportMode:
        return TransportMode.SOCKET

    @property
    def listening(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def listen(self) -> None:
        """Bind the listener on an OS-assigned port and compute the final arguments."""
        self._accepted = asyncio.get_running_loop().create_future()
        self._server = await asyncio.start_server(self._on_connect, host=LOOPBACK, port=0)
        self.port = self._server.sockets[0].getsockname()[1]
        self.args.extend(["-e", server_expression(self.port, self.spec.debug)])
        logger.debug(f"Listening for the R language server on {LOOPBACK}:{self.port}")

    def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self._accepted is None or self._accepted.done():
            logger.warning("Rejecting unexpected connection to the language server listener")
            writer.close()
            return
        logger.info("R process connected")
        self._accepted.set_result((reader, writer))
        self.close()

    async def open(self, on_spawn: Optional[SpawnCallback] = None) -> Channel:
        if not self.listening or self._accepted is None:
            raise LaunchFailed("Socket transport is not listening")

        try:
            process = await self.launcher.launch(self.spec, self.args, stdio=False)
            if on_spawn is not None:
                on_spawn(process)

            exited = asyncio.ensure_future(process.wait())
            try:
                await asyncio.wait(
                    {self._accepted, exited},
                    timeout=self.connect_timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                if not exited.done():
                    exited.cancel()

            if self._accepted.done():
                reader, writer = self._accepted.result()
                return Channel(process, reader, writer, self.mode)

            if exited.done() and not exited.cancelled():
                message = f"Language server exited {describe_exit(exited.result())} before connecting"
            else:
                message = f"Language server did not connect within {self.connect_timeout:g}s"
                if process.returncode is None:
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
                    await process.wait()
            logger.error(message)
            raise LaunchFailed(message)
        finally:
            self.close()

    def close(self) -> None:
        if self._server is not None:
            self._server.close()
        if self._accepted is not None and not self._accepted.done():
            self._accepted.cancel()


class TransportNegotiator:
    """Chooses and prepares the transport for a launch spec."""

    def __init__(self, launcher: Optional[ProcessLauncher] = None, connect_timeout: float = 10.0):
        self.launcher = launcher if launcher is not None else ProcessLauncher()
        self.connect_timeout = connect_timeout

    async def negotiate(self, spec: LaunchSpec) -> PreparedTransport:
        """Prepare the transport named by ``spec.mode``.

        Socket mode binds its listener here so the port can be passed to the
        server before the connection is accepted.
        """
        if spec.mode is TransportMode.STDIO:
            return StdioTransport(spec, self.launcher)

        transport = SocketTransport(spec, self.launcher, self.connect_timeout)
        try:
            await transport.listen()
        except OSError as e:
            transport.close()
            raise LaunchFailed(f"Could not listen on {LOOPBACK}: {e}") from e
        return transport
