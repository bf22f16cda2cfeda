"""Command line interface for diagbot."""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

import typer

from . import messages
from .catalog import load_catalog, seed_repository, validate_catalog
from .config import load_config
from .contracts import Button, EngineReply
from .engine import DialogueEngine
from .errors import CatalogValidationError, DiagbotError
from .persistence import DialogueRepository, get_repository

app = typer.Typer(help="CLI for the diagbot dialogue engine")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
) -> None:
    """diagbot CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _catalog_path(catalog: Optional[Path]) -> Optional[Path]:
    if catalog is not None:
        return catalog
    configured = load_config().catalog_path
    return Path(configured) if configured else None


@app.command("validate")
def validate(
    catalog: Optional[Path] = typer.Option(None, help="Scenario catalog YAML"),
) -> None:
    """Check the scenario catalog for broken trees.

    Example:
        diagbot validate --catalog ./scenarios.yaml
    """
    try:
        loaded = load_catalog(_catalog_path(catalog))
    except FileNotFoundError as e:
        typer.secho(f"Catalog not found: {e.filename}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    issues = validate_catalog(loaded)
    if issues:
        for item in issues:
            typer.secho(str(item), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    steps = sum(len(s.steps) for s in loaded.scenarios)
    typer.echo(f"OK: {len(loaded.scenarios)} scenarios, {steps} steps")


@app.command("seed")
def seed(
    catalog: Optional[Path] = typer.Option(None, help="Scenario catalog YAML"),
) -> None:
    """Validate the catalog and load it into the configured store."""
    config = load_config()
    try:
        loaded = load_catalog(_catalog_path(catalog))
    except FileNotFoundError as e:
        typer.secho(f"Catalog not found: {e.filename}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    repository = get_repository()
    try:
        stored = asyncio.run(
            seed_repository(repository, loaded, strict=config.strict_catalog)
        )
    except CatalogValidationError as e:
        for item in e.issues:
            typer.secho(str(item), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    for scenario in stored:
        typer.echo(f"{scenario.id}\t{scenario.name}")


def _render(reply: EngineReply) -> List[Button]:
    if not reply.handled:
        typer.echo(messages.GENERIC_REPLY)
        return []
    typer.echo(reply.text)
    for n, button in enumerate(reply.buttons, start=1):
        typer.echo(f"  #{n} {button.label}")
    return list(reply.buttons)


async def _ensure_seeded(repository: DialogueRepository, catalog: Optional[Path]) -> None:
    if await repository.list_scenarios():
        return
    await seed_repository(repository, load_catalog(catalog))


async def _chat(user_id: int, catalog: Optional[Path]) -> None:
    config = load_config()
    engine = DialogueEngine.from_config(config)
    await _ensure_seeded(engine.repository, catalog)

    buttons = _render(await engine.handle_start(user_id))
    for line in sys.stdin:
        text = line.strip()
        if not text:
            continue
        if text in ("/quit", "/exit"):
            break
        if text == "/start":
            reply = await engine.handle_start(user_id)
        elif text.startswith("#") and text[1:].isdigit():
            index = int(text[1:]) - 1
            if not 0 <= index < len(buttons):
                typer.echo("No such button")
                continue
            reply = await engine.handle_callback(user_id, buttons[index].callback)
        else:
            reply = await engine.handle_message(user_id, text)
        shown = _render(reply)
        if reply.handled:
            buttons = shown


@app.command("chat")
def chat(
    user_id: int = typer.Option(1, "--user-id", help="User id to chat as"),
    catalog: Optional[Path] = typer.Option(None, help="Scenario catalog YAML"),
) -> None:
    """
    Talk to the engine from the console.

    Buttons are printed numbered; type ``#N`` to press one, ``/start`` to
    restart and ``/quit`` to leave. An empty store is seeded with the catalog.

    Example:
        diagbot chat --user-id 42
    """
    try:
        asyncio.run(_chat(user_id, _catalog_path(catalog)))
    except DiagbotError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)


async def _stats(repository: DialogueRepository) -> tuple[int, int, dict[str, int]]:
    since = datetime.utcnow() - timedelta(hours=24)
    return (
        await repository.count_active_users(since),
        await repository.count_messages(),
        await repository.count_users_by_overlay_state(),
    )


@app.command("stats")
def stats() -> None:
    """Show active users (24h), message totals and users per overlay state."""
    repository = get_repository()
    active, total, by_state = asyncio.run(_stats(repository))
    typer.echo(f"active_users_24h\t{active}")
    typer.echo(f"messages_total\t{total}")
    for state, count in sorted(by_state.items()):
        typer.echo(f"users_{state}\t{count}")


if __name__ == "__main__":
    app()
