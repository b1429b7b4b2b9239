"""Document routing and folder-removal handling."""

import asyncio
import logging
import os
from typing import Dict, Iterable, List, Optional

from lsprotocol import types

from rlsp.errors import SessionError
from rlsp.output import OutputChannel
from rlsp.registry import SessionRegistry
from rlsp.servers.session import DEFAULT_KEY, ClientSession
from rlsp.utils.workspace import TextDocument, Workspace, WorkspaceFolder, is_watched

SUPPORTED_SCHEMES = frozenset({"file", "untitled"})
SUPPORTED_LANGUAGES = frozenset({"r", "rmd"})


class DocumentRouter:
    """Makes sure every opened R document reaches a session for its folder."""

    def __init__(
        self,
        registry: SessionRegistry,
        workspace: Workspace,
        sink: OutputChannel,
        home: Optional[str] = None,
    ):
        self.registry = registry
        self.workspace = workspace
        self.sink = sink
        self.home = home or os.path.expanduser("~")
        self.logger = logging.getLogger("rlsp.routing")

    def accepts(self, document: TextDocument) -> bool:
        return document.scheme in SUPPORTED_SCHEMES and document.language_id in SUPPORTED_LANGUAGES

    async def did_open(self, document: TextDocument) -> Optional[ClientSession]:
        """Route a newly opened document to its session.

        Untitled documents share the default session rooted at the home
        directory. Saved documents outside every workspace folder are ignored.

        Args:
            document: The opened document.

        Returns:
            The session serving the document, or None if it is ignored or
            its session failed to start.
        """
        if not self.accepts(document):
            return None

        if document.scheme == "untitled":
            key, cwd = DEFAULT_KEY, self.home
        else:
            folder = self.workspace.get_workspace_folder(document.uri)
            if folder is None:
                self.logger.debug(f"No workspace folder for {document.uri}, ignoring")
                return None
            key, cwd = folder.uri, folder.path

        try:
            session = await self.registry.get_or_create(key, cwd)
        except SessionError as e:
            self.logger.error(f"Could not start R language server for {key}: {e}")
            self.sink.append_line(f"Could not start R language server for {key}: {e}")
            self.sink.show()
            return None

        session.open_document(document)
        return session

    def did_change_watched_files(self, changes: Iterable[types.FileEvent]) -> None:
        """Forward R file changes to the running session of their folder.

        Changes outside every workspace folder, or in folders without a
        session, are dropped; no session is started for them.
        """
        by_folder: Dict[str, List[types.FileEvent]] = {}
        for change in changes:
            if not is_watched(change.uri):
                continue
            folder = self.workspace.get_workspace_folder(change.uri)
            if folder is not None:
                by_folder.setdefault(folder.uri, []).append(change)

        for key, folder_changes in by_folder.items():
            session = self.registry.get(key)
            if session is not None:
                session.notify_watched_files(folder_changes)


class FolderReaper:
    """Stops the sessions of workspace folders that were removed."""

    def __init__(self, registry: SessionRegistry):
        self.registry = registry
        self.logger = logging.getLogger("rlsp.routing")

    async def did_remove_folders(self, removed: Iterable[WorkspaceFolder]) -> None:
        removed = list(removed)
        if not removed:
            return
        self.logger.debug(f"Reaping sessions for {len(removed)} removed folder(s)")
        await asyncio.gather(*(self.registry.remove(folder.uri) for folder in removed))
