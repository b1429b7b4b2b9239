"""Workspace folders and documents as observed from the editor."""

import logging
import os
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from pygls import uris

logger = logging.getLogger("rlsp.workspace")

# Map file extensions to language identifiers
EXTENSION_TO_LANGUAGE: Dict[str, str] = {
    ".r": "r",
    ".rmd": "rmd",
}

PLAINTEXT = "plaintext"

# Files whose changes are forwarded to the servers (the editor watches **/*.r)
WATCHED_EXTENSION = ".r"


def language_for_path(path: str) -> Optional[str]:
    """Get the language identifier for a file path, or None if not an R file."""
    _, ext = os.path.splitext(path)
    return EXTENSION_TO_LANGUAGE.get(ext.lower())


def is_watched(uri: str) -> bool:
    """Check whether changes to ``uri`` are forwarded to the language servers."""
    if uris.uri_scheme(uri) != "file":
        return False
    _, ext = os.path.splitext(uris.to_fs_path(uri))
    return ext.lower() == WATCHED_EXTENSION


@dataclass(frozen=True)
class WorkspaceFolder:
    """A project root; its URI is the session key."""

    uri: str
    name: str

    @classmethod
    def from_path(cls, path: str, name: Optional[str] = None) -> "WorkspaceFolder":
        path = os.path.abspath(path)
        return cls(uri=uris.from_fs_path(path), name=name or os.path.basename(path))

    @property
    def path(self) -> str:
        return uris.to_fs_path(self.uri)

    def contains(self, path: str) -> bool:
        """Check whether ``path`` lies inside this folder."""
        root = os.path.abspath(self.path)
        path = os.path.abspath(path)
        try:
            return os.path.commonpath([root, path]) == root
        except ValueError:
            # Different drives on Windows
            return False


@dataclass(frozen=True)
class TextDocument:
    """An open editor document.

    ``text`` is the editor buffer; when it is None the saved file is read.
    """

    uri: str
    language_id: str
    version: int = 1
    text: Optional[str] = None

    @classmethod
    def from_path(cls, path: str, language_id: Optional[str] = None) -> "TextDocument":
        path = os.path.abspath(path)
        return cls(
            uri=uris.from_fs_path(path),
            language_id=language_id or language_for_path(path) or PLAINTEXT,
        )

    @classmethod
    def untitled(cls, name: str = "Untitled-1", language_id: str = "r") -> "TextDocument":
        return cls(uri=f"untitled:{name}", language_id=language_id)

    @property
    def scheme(self) -> str:
        return uris.uri_scheme(self.uri) or ""

    def read_text(self) -> str:
        """Return the document contents as sent to the server."""
        if self.text is not None:
            return self.text
        if self.scheme != "file":
            return ""
        try:
            with open(uris.to_fs_path(self.uri), encoding="utf-8", errors="replace") as f:
                return f.read()
        except OSError as e:
            logger.warning(f"Could not read {self.uri}: {e}")
            return ""


class Workspace:
    """The set of open workspace folders."""

    def __init__(self, folders: Iterable[WorkspaceFolder] = ()):
        self._folders: Dict[str, WorkspaceFolder] = {}
        for folder in folders:
            self.add_folder(folder)

    @property
    def folders(self) -> List[WorkspaceFolder]:
        return list(self._folders.values())

    def add_folder(self, folder: WorkspaceFolder) -> None:
        self._folders[folder.uri] = folder
        logger.info(f"Workspace folder added: {folder.path}")

    def remove_folder(self, folder: WorkspaceFolder) -> None:
        if self._folders.pop(folder.uri, None) is not None:
            logger.info(f"Workspace folder removed: {folder.path}")

    def get_workspace_folder(self, uri: str) -> Optional[WorkspaceFolder]:
        """Find the folder owning a document URI.

        Args:
            uri: Document URI; only ``file`` URIs can belong to a folder.

        Returns:
            The innermost containing folder, or None.
        """
        if uris.uri_scheme(uri) != "file":
            return None

        path = uris.to_fs_path(uri)
        matches = [folder for folder in self._folders.values() if folder.contains(path)]
        if not matches:
            return None
        return max(matches, key=lambda folder: len(folder.path))
