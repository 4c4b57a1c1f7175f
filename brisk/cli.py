"""Command line entry point.

Provides the `brisk` command. Every subcommand takes APP, an import path
``module:attribute`` resolving to an :class:`~brisk.app.App`.

Examples:

    brisk worker myproject.tasks:app -Q reports -Q celery -c 8

    brisk beat myproject.tasks:app

    brisk send myproject.tasks:app reports.build --args '[42]' --countdown 10
"""

from __future__ import annotations

import asyncio
import importlib
import json
from typing import Annotated, Any

import typer
from rich.console import Console

import brisk.logging
from brisk import __version__
from brisk.app import App
from brisk.broker import connect_with_retry
from brisk.exceptions import BriskError, ForcedShutdown

app = typer.Typer(
    name="brisk",
    help="brisk - distributed task queue worker and scheduler.",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)

AppPath = Annotated[str, typer.Argument(help="Application import path, module:attribute.")]


def version_callback(value: bool) -> None:
    """Handle --version flag."""
    if value:
        print(f"brisk {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """brisk - distributed task queue worker and scheduler."""


def load_app(path: str) -> App:
    """Import ``module:attribute`` and return the App it names."""
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise typer.BadParameter(f"expected module:attribute, got '{path}'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise typer.BadParameter(f"cannot import '{module_name}': {e}") from e
    try:
        target = getattr(module, attribute)
    except AttributeError:
        raise typer.BadParameter(f"'{module_name}' has no attribute '{attribute}'") from None
    if not isinstance(target, App):
        raise typer.BadParameter(f"'{path}' is not a brisk App")
    return target


def _parse_json(value: str | None, expected: type, option: str) -> Any:
    if value is None:
        return expected()
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"{option} is not valid JSON: {e}") from e
    if not isinstance(parsed, expected):
        raise typer.BadParameter(f"{option} must be a JSON {expected.__name__}")
    return parsed


def _fail(message: str, error: Exception) -> typer.Exit:
    error_console.print(f"[red]Error:[/red] {message}: {error}")
    return typer.Exit(code=1)


@app.command()
def worker(
    app_path: AppPath,
    queues: Annotated[
        list[str] | None,
        typer.Option("--queue", "-Q", help="Queue to consume (repeatable)."),
    ] = None,
    concurrency: Annotated[
        int | None,
        typer.Option("--concurrency", "-c", min=1, help="Concurrently executing tasks."),
    ] = None,
) -> None:
    """Consume queues and execute tasks.

    The first SIGINT/SIGTERM stops consuming and waits for running tasks;
    a second one abandons them for redelivery.
    """
    target = load_app(app_path)
    brisk.logging.configure("brisk-worker")
    overrides: dict[str, Any] = {}
    if concurrency is not None:
        overrides["worker_concurrency"] = concurrency

    try:
        asyncio.run(target.worker(queues=queues or None, **overrides).run())
    except ForcedShutdown as e:
        raise _fail("forced shutdown", e) from e
    except BriskError as e:
        raise _fail("worker failed", e) from e


@app.command()
def beat(app_path: AppPath) -> None:
    """Publish the app's periodic tasks.

    Run exactly one beat per schedule; concurrent beats double-fire every
    entry.
    """
    target = load_app(app_path)
    brisk.logging.configure("brisk-beat")
    try:
        asyncio.run(target.beat().run())
    except BriskError as e:
        raise _fail("beat failed", e) from e


@app.command()
def purge(
    app_path: AppPath,
    queue: Annotated[str, typer.Argument(help="Queue to purge.")],
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Do not ask for confirmation."),
    ] = False,
) -> None:
    """Discard every ready message in a queue."""
    target = load_app(app_path)
    if not yes:
        typer.confirm(f"Discard all ready messages in '{queue}'?", abort=True)

    async def _purge() -> int:
        async with target.broker:
            return await target.broker.purge(queue)

    try:
        count = asyncio.run(_purge())
    except BriskError as e:
        raise _fail(f"failed to purge '{queue}'", e) from e
    console.print(f"Purged {count} message(s) from [bold]{queue}[/bold]")


@app.command()
def send(
    app_path: AppPath,
    task_name: Annotated[str, typer.Argument(help="Task name.")],
    args: Annotated[
        str | None,
        typer.Option("--args", "-a", help="Positional arguments as a JSON list."),
    ] = None,
    kwargs: Annotated[
        str | None,
        typer.Option("--kwargs", "-k", help="Keyword arguments as a JSON object."),
    ] = None,
    countdown: Annotated[
        float | None,
        typer.Option("--countdown", help="Seconds before the task may run."),
    ] = None,
    queue: Annotated[
        str | None,
        typer.Option("--queue", "-Q", help="Destination queue (skips routing)."),
    ] = None,
) -> None:
    """Publish one task and print its id."""
    target = load_app(app_path)
    task_args = _parse_json(args, list, "--args")
    task_kwargs = _parse_json(kwargs, dict, "--kwargs")

    async def _send() -> str:
        await connect_with_retry(target.broker)
        try:
            return await target.send_task(
                task_name, task_args, task_kwargs, countdown=countdown, queue=queue
            )
        finally:
            await target.close()

    try:
        task_id = asyncio.run(_send())
    except (BriskError, ValueError) as e:
        raise _fail(f"failed to send '{task_name}'", e) from e
    console.print(task_id)


def cli() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    cli()
