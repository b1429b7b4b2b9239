"""Settings consumed by the R language server session manager."""

import json
import logging
import os
import shutil
from typing import Any, Dict, List, Mapping

from pydantic import BaseModel, ConfigDict, Field

from rlsp.errors import BinaryNotFound

logger = logging.getLogger("rlsp.config")

# Editor setting key prefixes, as found in a settings.json file
SECTION = "r.lsp"
RPATH_KEY = "r.rpath"


class LspSettings(BaseModel):
    """The ``r.lsp`` configuration section plus the R binary location."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    debug: bool = False
    use_stdio: bool = False
    lang: str = ""
    args: List[str] = Field(default_factory=list)
    rpath: str = ""
    connect_timeout: float = Field(default=10.0, gt=0)
    stop_timeout: float = Field(default=5.0, gt=0)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "LspSettings":
        """Build settings from editor-style configuration.

        Accepts flat dotted keys (``"r.lsp.debug"``), a nested mapping
        (``{"r": {"lsp": {...}}}``) or plain field names.

        Args:
            data: Raw configuration mapping.

        Returns:
            Validated settings.
        """
        values: Dict[str, Any] = {}

        nested = data.get("r")
        if isinstance(nested, Mapping):
            if "rpath" in nested:
                values["rpath"] = nested["rpath"]
            lsp = nested.get("lsp")
            if isinstance(lsp, Mapping):
                values.update(lsp)

        for key, value in data.items():
            if key == RPATH_KEY:
                values["rpath"] = value
            elif key.startswith(SECTION + "."):
                values[key[len(SECTION) + 1:]] = value
            elif key in cls.model_fields:
                values[key] = value

        return cls.model_validate(values)

    @classmethod
    def load(cls, path: str) -> "LspSettings":
        """Load settings from a JSON settings file.

        Args:
            path: Path to a ``settings.json``-shaped file.

        Returns:
            Validated settings.
        """
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Settings file must contain a JSON object: {path}")
        return cls.from_mapping(data)

    def section(self) -> Dict[str, Any]:
        """Return the ``r.lsp`` section as sent to the server."""
        return self.model_dump(include={"debug", "use_stdio", "lang", "args"})


def resolve_rpath(settings: LspSettings) -> str:
    """Resolve the R binary used to run the language server.

    Args:
        settings: Current settings; ``rpath`` wins over a PATH lookup.

    Returns:
        Absolute path of the R binary.

    Raises:
        BinaryNotFound: If the configured path is not a file or R is not on PATH.
    """
    if settings.rpath:
        path = os.path.expanduser(settings.rpath)
        if not os.path.isfile(path):
            raise BinaryNotFound(path)
        return os.path.abspath(path)

    found = shutil.which("R")
    if found is None:
        raise BinaryNotFound()
    logger.debug(f"Found R on PATH: {found}")
    return found
