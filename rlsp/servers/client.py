"""pygls-backed protocol client bound to an established server channel."""

import asyncio
import logging
import os
from typing import Any, Dict, Iterable, List, Optional

from lsprotocol import types
from pygls import uris
from pygls.client import JsonRPCClient, aio_readline

from rlsp import __version__
from rlsp.config import LspSettings
from rlsp.output import OutputChannel
from rlsp.utils.workspace import TextDocument

CLIENT_NAME = "rlsp"

# window/logMessage types mapped to logging levels
LOG_LEVELS = {
    types.MessageType.Error: logging.ERROR,
    types.MessageType.Warning: logging.WARNING,
    types.MessageType.Info: logging.INFO,
    types.MessageType.Log: logging.DEBUG,
}


def _field(params: Any, name: str, default: Any = None) -> Any:
    if isinstance(params, dict):
        return params.get(name, default)
    return getattr(params, name, default)


class RLanguageClient(JsonRPCClient):
    """JSON-RPC client for one R language server.

    Unlike ``start_io`` the process is spawned elsewhere; the client is
    attached to whatever reader/writer pair the transport produced.
    """

    def __init__(self, sink: OutputChannel, settings: LspSettings):
        super().__init__()
        self.sink = sink
        self.settings = settings
        self.logger = logging.getLogger("rlsp.servers.client")
        self.initialized = False
        # URI -> version of the documents announced with didOpen
        self.documents: Dict[str, int] = {}
        # Latest published diagnostics per document URI
        self.diagnostics: Dict[str, List[Any]] = {}

        @self.feature(types.WINDOW_LOG_MESSAGE)
        def log_message(params):
            self._handle_message(params)

        @self.feature(types.WINDOW_SHOW_MESSAGE)
        def show_message(params):
            self._handle_message(params)

        @self.feature(types.TEXT_DOCUMENT_PUBLISH_DIAGNOSTICS)
        def publish_diagnostics(params):
            self._handle_diagnostics(params)

    def attach(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Start exchanging protocol messages over ``reader``/``writer``."""
        self.protocol.connection_made(writer)
        connection = asyncio.ensure_future(
            aio_readline(self._stop_event, reader, self.protocol.data_received)
        )
        self._async_tasks.append(connection)

    def _handle_message(self, params: Any) -> None:
        message = _field(params, "message", "")
        message_type = _field(params, "type", types.MessageType.Log)
        try:
            level = LOG_LEVELS.get(types.MessageType(message_type), logging.INFO)
        except ValueError:
            level = logging.INFO
        self.logger.log(level, f"LSP server: {message}")
        self.sink.append_line(message)

    def _handle_diagnostics(self, params: Any) -> None:
        uri = _field(params, "uri")
        diagnostics = list(_field(params, "diagnostics") or [])
        self.diagnostics[uri] = diagnostics
        self.logger.debug(f"{len(diagnostics)} diagnostic(s) for {uri}")

    def report_server_error(self, error: Exception, source: Any) -> None:
        self.logger.error(f"Protocol error from R language server: {error}")
        self.sink.append_line(f"Protocol error: {error}")

    async def initialize(self, root_path: str, folder_uri: Optional[str] = None) -> Any:
        """Run the initialize handshake and push the ``r.lsp`` settings.

        Args:
            root_path: Working directory of the server.
            folder_uri: Workspace folder URI, or None for the default session.

        Returns:
            The server's initialize result.
        """
        root_uri = folder_uri or uris.from_fs_path(root_path)
        workspace_folders = None
        if folder_uri is not None:
            workspace_folders = [{"uri": folder_uri, "name": os.path.basename(root_path)}]

        params = {
            "processId": os.getpid(),
            "clientInfo": {"name": CLIENT_NAME, "version": __version__},
            "rootPath": root_path,
            "rootUri": root_uri,
            "workspaceFolders": workspace_folders,
            "capabilities": {
                "textDocument": {
                    "synchronization": {"didSave": True, "willSave": True},
                    "completion": {"completionItem": {"snippetSupport": True}},
                    "hover": {"contentFormat": ["markdown", "plaintext"]},
                    "signatureHelp": {},
                    "definition": {},
                    "references": {},
                    "documentHighlight": {},
                    "documentSymbol": {"hierarchicalDocumentSymbolSupport": True},
                    "formatting": {},
                    "rangeFormatting": {},
                    "onTypeFormatting": {},
                    "rename": {},
                    "publishDiagnostics": {},
                },
                "workspace": {
                    "workspaceFolders": True,
                    "didChangeConfiguration": {},
                    "didChangeWatchedFiles": {},
                },
            },
            "initializationOptions": {},
            "trace": "verbose" if self.settings.debug else "off",
        }

        result = await self.protocol.send_request_async(types.INITIALIZE, params)
        self.protocol.notify(types.INITIALIZED, {})
        self.protocol.notify(
            types.WORKSPACE_DID_CHANGE_CONFIGURATION,
            {"settings": {"r": {"lsp": self.settings.section()}}},
        )
        self.initialized = True
        self.logger.info(f"Initialized R language server for {root_uri}")
        return result

    async def shutdown(self) -> None:
        """Ask the server to shut down, then tell it to exit."""
        await self.protocol.send_request_async(types.SHUTDOWN)
        self.protocol.notify(types.EXIT)

    def did_open(self, document: TextDocument) -> bool:
        """Send ``textDocument/didOpen`` unless the document is already open.

        Returns:
            Whether a notification was sent.
        """
        if document.uri in self.documents:
            return False

        self.documents[document.uri] = document.version
        self.protocol.notify(
            types.TEXT_DOCUMENT_DID_OPEN,
            {
                "textDocument": {
                    "uri": document.uri,
                    "languageId": document.language_id,
                    "version": document.version,
                    "text": document.read_text(),
                }
            },
        )
        return True

    def did_change_watched_files(self, changes: Iterable[types.FileEvent]) -> None:
        changes = [{"uri": change.uri, "type": int(change.type)} for change in changes]
        if changes:
            self.protocol.notify(types.WORKSPACE_DID_CHANGE_WATCHED_FILES, {"changes": changes})
