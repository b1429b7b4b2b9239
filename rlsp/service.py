"""Main service module for the R language server session manager.

This module ties the registry, the document router and the folder reaper to
one activation of the host editor.
"""

import asyncio
import logging
from typing import Callable, Iterable, Optional

from lsprotocol import types

from rlsp.config import LspSettings
from rlsp.output import OutputChannel
from rlsp.registry import SessionRegistry
from rlsp.routing import DocumentRouter, FolderReaper
from rlsp.servers.session import ClientSession
from rlsp.utils.workspace import TextDocument, Workspace, WorkspaceFolder

SessionFactory = Callable[[str, str], ClientSession]


class LanguageService:
    """Entry point driven by the editor's lifecycle and document events."""

    def __init__(
        self,
        settings: LspSettings,
        workspace: Optional[Workspace] = None,
        sink: Optional[OutputChannel] = None,
        session_factory: Optional[SessionFactory] = None,
        home: Optional[str] = None,
    ):
        """Initialize the service.

        Args:
            settings: ``r.lsp`` settings applied to every new session.
            workspace: Open workspace folders.
            sink: Output channel shared by all sessions.
            session_factory: Builds a session from ``(key, cwd)``; defaults to
                :class:`ClientSession` with ``settings`` and ``sink``.
            home: Working directory of the default session.
        """
        self.settings = settings
        self.workspace = workspace if workspace is not None else Workspace()
        self.sink = sink if sink is not None else OutputChannel()
        self.home = home
        self.logger = logging.getLogger("rlsp")
        self._session_factory = session_factory or self._create_session

        self.registry: Optional[SessionRegistry] = None
        self.router: Optional[DocumentRouter] = None
        self.reaper: Optional[FolderReaper] = None

    def _create_session(self, key: str, cwd: str) -> ClientSession:
        return ClientSession(key, cwd, self.settings, self.sink)

    @property
    def active(self) -> bool:
        return self.registry is not None

    async def activate(self, open_documents: Iterable[TextDocument] = ()) -> None:
        """Start handling events and route the documents that are already open."""
        if self.active:
            return

        self.registry = SessionRegistry(self._session_factory)
        self.router = DocumentRouter(self.registry, self.workspace, self.sink, home=self.home)
        self.reaper = FolderReaper(self.registry)
        self.logger.info(f"Activated with {len(self.workspace.folders)} workspace folder(s)")

        await asyncio.gather(*(self.did_open(document) for document in open_documents))

    async def did_open(self, document: TextDocument) -> Optional[ClientSession]:
        """Handle a document-open event."""
        if self.router is None:
            raise RuntimeError("Language service is not active")
        return await self.router.did_open(document)

    def did_change_watched_files(self, changes: Iterable[types.FileEvent]) -> None:
        """Handle file system changes reported by the editor's watcher."""
        if self.router is None:
            raise RuntimeError("Language service is not active")
        self.router.did_change_watched_files(changes)

    async def did_change_workspace_folders(
        self,
        added: Iterable[WorkspaceFolder] = (),
        removed: Iterable[WorkspaceFolder] = (),
    ) -> None:
        """Handle a workspace-folders change event."""
        if self.reaper is None:
            raise RuntimeError("Language service is not active")

        removed = list(removed)
        for folder in added:
            self.workspace.add_folder(folder)
        for folder in removed:
            self.workspace.remove_folder(folder)
        await self.reaper.did_remove_folders(removed)

    async def deactivate(self) -> None:
        """Stop every session and wait until all of them have stopped."""
        if self.registry is None:
            return

        registry = self.registry
        self.registry = None
        self.router = None
        self.reaper = None
        await registry.stop_all()
        self.logger.info("Deactivated")
