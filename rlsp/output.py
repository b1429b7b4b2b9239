"""Append-only output channel shared by the language server sessions."""

import logging
from typing import Callable, List, Optional

OUTPUT_CHANNEL_NAME = "R Language Server"


class OutputChannel:
    """In-memory log sink for server stderr and lifecycle notices.

    Every line is mirrored to the ``rlsp.output`` logger. ``show`` asks the
    host to bring the channel forward; the optional ``writer`` and ``on_show``
    hooks let a host (the CLI, a test) observe both.
    """

    def __init__(
        self,
        name: str = OUTPUT_CHANNEL_NAME,
        writer: Optional[Callable[[str], None]] = None,
        on_show: Optional[Callable[[], None]] = None,
    ):
        self.name = name
        self.logger = logging.getLogger("rlsp.output")
        self._lines: List[str] = []
        self._writer = writer
        self._on_show = on_show
        self.show_count = 0

    @property
    def lines(self) -> List[str]:
        """Lines appended so far, oldest first."""
        return list(self._lines)

    def append_line(self, text: str) -> None:
        """Append one line (or a verbatim chunk) to the channel."""
        self._lines.append(text)
        self.logger.info(f"{self.name}: {text.rstrip()}")
        if self._writer is not None:
            self._writer(text)

    def show(self) -> None:
        """Surface the channel to the user."""
        self.show_count += 1
        if self._on_show is not None:
            self._on_show()

    def __len__(self) -> int:
        return len(self._lines)
