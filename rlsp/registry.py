"""Registry of running sessions, one per workspace folder plus a default."""

import asyncio
import logging
from typing import Callable, Dict, Optional, Set

from rlsp.errors import SessionError
from rlsp.servers.session import DEFAULT_KEY, ClientSession

SessionFactory = Callable[[str, str], ClientSession]


class SessionRegistry:
    """Owns every session of one activation.

    A key is registered only while its session is running. Creation is
    tracked per key before the first suspension point, so concurrent
    requests for the same key share a single server process.
    """

    def __init__(self, factory: SessionFactory):
        """Initialize the registry.

        Args:
            factory: Builds an unstarted session from ``(key, cwd)``.
        """
        self._factory = factory
        self._sessions: Dict[str, ClientSession] = {}
        self._pending: Dict[str, "asyncio.Task[ClientSession]"] = {}
        self._doomed: Set[str] = set()
        self.logger = logging.getLogger("rlsp.registry")

    def get(self, key: str) -> Optional[ClientSession]:
        return self._sessions.get(key)

    @property
    def default(self) -> Optional[ClientSession]:
        """The session serving documents outside any folder, if started."""
        return self._sessions.get(DEFAULT_KEY)

    @property
    def sessions(self) -> Dict[str, ClientSession]:
        """Folder sessions by folder URI (the default session excluded)."""
        return {key: session for key, session in self._sessions.items() if key != DEFAULT_KEY}

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    def __contains__(self, key: str) -> bool:
        return key in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    async def get_or_create(self, key: str, cwd: str) -> ClientSession:
        """Return the session for ``key``, starting one if needed.

        Args:
            key: Workspace folder URI or ``DEFAULT_KEY``.
            cwd: Working directory used if a session has to be created.

        Returns:
            The running session. If the key was removed while the session
            was starting, the session is returned already stopped.

        Raises:
            SessionError: If the session could not be started.
        """
        session = self._sessions.get(key)
        if session is not None:
            return session

        task = self._pending.get(key)
        if task is None:
            self.logger.debug(f"Creating session for {key}")
            task = asyncio.ensure_future(self._create(key, cwd))
            self._pending[key] = task
        else:
            self.logger.debug(f"Joining in-flight session creation for {key}")
        return await asyncio.shield(task)

    async def _create(self, key: str, cwd: str) -> ClientSession:
        session = self._factory(key, cwd)
        session.on_terminated = self._on_terminated
        try:
            await session.start()
        except BaseException:
            self._doomed.discard(key)
            raise
        finally:
            self._pending.pop(key, None)

        if key in self._doomed:
            self._doomed.discard(key)
            self.logger.info(f"Session for {key} was removed while starting, stopping it")
            await session.stop()
            return session

        self._sessions[key] = session
        self.logger.info(f"Registered session for {key}")
        return session

    def _on_terminated(self, session: ClientSession) -> None:
        if self._sessions.get(session.key) is session:
            del self._sessions[session.key]
            self.logger.info(f"Evicted terminated session for {session.key}")

    async def remove(self, key: str) -> None:
        """Evict and stop the session for ``key``.

        A session still starting is stopped as soon as it is running. An
        unknown key is ignored.
        """
        if key in self._pending:
            self.logger.info(f"Queueing stop for session {key} that is still starting")
            self._doomed.add(key)
            return

        session = self._sessions.pop(key, None)
        if session is None:
            return
        self.logger.info(f"Removing session for {key}")
        await session.stop()

    async def stop_all(self) -> None:
        """Stop every session, including those still starting, and wait for all of them."""
        pending = list(self._pending.values())
        self._doomed.update(self._pending)
        sessions = list(self._sessions.values())
        self._sessions.clear()

        self.logger.info(f"Stopping {len(sessions)} session(s), {len(pending)} still starting")
        results = await asyncio.gather(
            *(session.stop() for session in sessions),
            *(asyncio.shield(task) for task in pending),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, SessionError):
                self.logger.debug(f"Session failed before teardown: {result}")
            elif isinstance(result, BaseException):
                self.logger.error(f"Unexpected error during teardown: {result!r}")
