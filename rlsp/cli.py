#!/usr/bin/env python3
"""Command-line interface for the R language server session manager."""

import asyncio
import json
import logging
from typing import Optional, Sequence

import click
from pydantic import ValidationError

from rlsp.config import LspSettings
from rlsp.errors import BinaryNotFound
from rlsp.output import OutputChannel
from rlsp.servers.launcher import LaunchSpec
from rlsp.service import LanguageService
from rlsp.utils.workspace import TextDocument, Workspace, WorkspaceFolder


def load_settings(settings_path: Optional[str], debug: bool) -> LspSettings:
    """Load settings from a JSON file and apply command-line overrides.

    Args:
        settings_path: Path to a settings.json file, or None for defaults.
        debug: Whether ``--debug`` was given.

    Returns:
        The resulting settings.
    """
    try:
        settings = LspSettings.load(settings_path) if settings_path else LspSettings()
    except (ValidationError, ValueError) as e:
        raise click.BadParameter(str(e), param_hint="--settings")

    if debug:
        settings = settings.model_copy(update={"debug": True})
    return settings


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging and server debug mode")
@click.pass_context
def main(ctx: click.Context, debug: bool) -> None:
    """Launch and supervise R language servers per workspace folder."""
    # Configure logging
    log_level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@main.command("launch-spec")
@click.option("--folder", default=".", type=click.Path(exists=True, file_okay=False), help="Workspace folder")
@click.option("--settings", "settings_path", type=click.Path(exists=True, dir_okay=False), help="JSON settings file")
@click.pass_context
def launch_spec(ctx: click.Context, folder: str, settings_path: Optional[str]) -> None:
    """Print how the server would be launched for FOLDER."""
    settings = load_settings(settings_path, ctx.obj["debug"])
    workspace_folder = WorkspaceFolder.from_path(folder)
    try:
        spec = LaunchSpec.from_settings(settings, workspace_folder.path)
    except BinaryNotFound as e:
        raise click.ClickException(str(e))
    click.echo(json.dumps(spec.describe(), indent=2))


@main.command()
@click.argument("files", nargs=-1, type=click.Path(exists=True, dir_okay=False))
@click.option("--folder", "folders", multiple=True, type=click.Path(exists=True, file_okay=False),
              help="Workspace folder (repeatable)")
@click.option("--untitled", is_flag=True, help="Also open an untitled R document")
@click.option("--settings", "settings_path", type=click.Path(exists=True, dir_okay=False), help="JSON settings file")
@click.pass_context
def serve(
    ctx: click.Context,
    files: Sequence[str],
    folders: Sequence[str],
    untitled: bool,
    settings_path: Optional[str],
) -> None:
    """Open FILES and keep their language servers running until Ctrl+C."""
    settings = load_settings(settings_path, ctx.obj["debug"])
    workspace = Workspace(WorkspaceFolder.from_path(folder) for folder in folders)
    documents = [TextDocument.from_path(path) for path in files]
    if untitled:
        documents.append(TextDocument.untitled())

    sink = OutputChannel(writer=lambda text: click.echo(text.rstrip("\n"), err=True))
    service = LanguageService(settings, workspace=workspace, sink=sink)

    try:
        running = asyncio.run(_serve(service, documents))
    except KeyboardInterrupt:
        click.echo("Service stopped")
        return

    if not running:
        raise click.ClickException("No language server was started")


async def _serve(service: LanguageService, documents: Sequence[TextDocument]) -> bool:
    try:
        await service.activate(documents)
        count = len(service.registry)
        if count == 0:
            return False

        click.echo(f"{count} R language server session(s) running")
        # Keep the service running until Ctrl+C
        click.echo("Press Ctrl+C to stop the service")
        await asyncio.Event().wait()
        return True
    finally:
        click.echo("Stopping service...")
        await service.deactivate()


if __name__ == "__main__":
    main()  # pylint: disable=no-value-for-parameter
