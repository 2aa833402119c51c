import asyncio
import logging
import os
import pathlib
import signal
from contextlib import contextmanager
from typing import Annotated, Iterator, Optional

import questionary
import typer
import yaml

from lockward.cli.builders.wizard import start_configfile_creation_wizard
from lockward.server.app import (
    initialize_locks,
    start_server,
    config as server_config,
)
from lockward.server.coordinator import LockTarget
from lockward.server.lock_base import (
    BudgetExhausted,
    CancellationRequested,
    LockError,
    LockHandle,
    LockNotFound,
)

EXIT_LOCK_ERROR = 2
EXIT_BUDGET_EXHAUSTED = 3
EXIT_RELEASE_WARNING = 4
EXIT_CANCELLED = 130

app = typer.Typer(pretty_exceptions_enable=False, rich_markup_mode=None)


@app.callback()
def main_callback(
    ctx: typer.Context,
    config_file: Annotated[
        Optional[pathlib.Path],
        typer.Option("--config", "-c", help="Path of the configuration file"),
    ] = None,
    verbose: Annotated[bool, typer.Option("-v", "--verbose", help="Print lock progress")] = False,
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else server_config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = config_file or server_config.config_file


@contextmanager
def report_lock_errors() -> Iterator[None]:
    try:
        yield

    except BudgetExhausted as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_BUDGET_EXHAUSTED)

    except CancellationRequested as e:
        typer.echo(f"Aborted: {e}", err=True)
        raise typer.Exit(EXIT_CANCELLED)

    except LockError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_LOCK_ERROR)


async def load_target(config_file: pathlib.Path, lock_name: str) -> LockTarget:
    targets = await initialize_locks(config_file)
    if lock_name not in targets:
        raise typer.BadParameter(f"Lock not found: {lock_name} - declared locks: {', '.join(targets)}")

    return targets[lock_name]


async def run_command(args: list[str], handle: LockHandle) -> int:
    env = {
        **os.environ,
        "LOCKWARD_LOCK_IDENTITY": handle.identity,
        "LOCKWARD_LOCK_OWNER": handle.owner,
        "LOCKWARD_FENCING_TOKEN": handle.fencing_token,
    }
    proc = await asyncio.create_subprocess_exec(*args, env=env)
    try:
        return await proc.wait()

    except asyncio.CancelledError:
        proc.terminate()
        await proc.wait()
        raise


async def _run(config_file: pathlib.Path, lock_name: str, args: list[str], owner: Optional[str]) -> int:
    target = await load_target(config_file, lock_name)
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, cancel_event.set)

    try:
        result = await target.coordinator.run(
            target.identity,
            owner,
            lambda handle: run_command(args, handle),
            cancel_event=cancel_event,
        )

    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    if result.release_warning is not None:
        typer.echo(
            f"Warning: the command finished but the lock could not be released cleanly: {result.release_warning}",
            err=True,
        )
        if result.value == 0:
            return EXIT_RELEASE_WARNING

    return result.value


@app.command()
def run(
    ctx: typer.Context,
    lock_name: Annotated[str, typer.Argument(help="Name of the lock")],
    args: Annotated[list[str], typer.Argument(help="Command to run")],
    owner: Annotated[Optional[str], typer.Option(help="Owner name recorded in the lock - defaults to the hostname")] = None,
) -> None:
    """Runs a command while holding the lock.

    The lock is released when the command exits - also when it fails or is interrupted.

    Examples:

    $ lockward run main -- terraform apply
    """
    with report_lock_errors():
        return_code = asyncio.run(_run(ctx.obj, lock_name, args, owner))

    raise typer.Exit(return_code)


async def _status(config_file: pathlib.Path, lock_name: str) -> None:
    target = await load_target(config_file, lock_name)
    status = await target.coordinator.status(target.identity)
    if not status.held:
        typer.echo(f"{lock_name}: free")
        return

    line = f"{lock_name}: held by {status.owner} since {status.acquired_at.isoformat()}"
    if status.age_exceeds_ttl:
        line += " (stale)"

    typer.echo(line)


@app.command()
def status(
    ctx: typer.Context,
    lock_name: Annotated[str, typer.Argument(help="Name of the lock")],
) -> None:
    """Prints who holds the lock."""
    with report_lock_errors():
        asyncio.run(_status(ctx.obj, lock_name))


async def _force_unlock(config_file: pathlib.Path, lock_name: str, yes: bool) -> None:
    target = await load_target(config_file, lock_name)
    try:
        record = await target.coordinator.inspect(target.identity)

    except LockNotFound:
        typer.echo(f"{lock_name} is not locked")
        return

    typer.echo(f"{lock_name} is held by {record.owner} since {record.acquired_at.isoformat()}")
    if not yes:
        should_unlock = await questionary.confirm(
            "Removing a lock that is still in use allows concurrent writes. Remove it anyway?",
            default=False,
        ).ask_async()
        if not should_unlock:
            typer.echo("Aborting...")
            return

    await target.coordinator.force_unlock(target.identity)
    typer.echo(f"{lock_name} unlocked")


@app.command()
def force_unlock(
    ctx: typer.Context,
    lock_name: Annotated[str, typer.Argument(help="Name of the lock")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
) -> None:
    """Removes the lock regardless of who holds it.

    Use it only when the holder is known to be dead.
    """
    with report_lock_errors():
        asyncio.run(_force_unlock(ctx.obj, lock_name, yes))


async def _list_locks(config_file: pathlib.Path, lock_name: str) -> None:
    target = await load_target(config_file, lock_name)
    try:
        records = await target.coordinator.list_locks()

    except NotImplementedError as e:
        raise typer.BadParameter(f"Lock {lock_name} is not stored in a ledger - listing is not supported") from e

    if not records:
        typer.echo("No locks are held")

    for record in records:
        typer.echo(f"{record.identity}: held by {record.owner} since {record.acquired_at.isoformat()}")


@app.command(name="list")
def list_locks(
    ctx: typer.Context,
    lock_name: Annotated[str, typer.Argument(help="Name of a lock stored in the ledger to list")],
) -> None:
    """Lists every lock held in the ledger of the given lock."""
    with report_lock_errors():
        asyncio.run(_list_locks(ctx.obj, lock_name))


async def _init(config_file: pathlib.Path) -> None:
    if config_file.exists():
        typer.echo("Configuration file already exists")
        should_replace = await questionary.confirm(
            "Do you want to replace it?",
            default=False,
        ).ask_async()
        if not should_replace:
            typer.echo("Aborting...")
            return

        typer.echo("Replacing existing configuration file")

    lock_name, result_file = await start_configfile_creation_wizard()
    raw_file = yaml.safe_dump(yaml.safe_load(result_file.model_dump_json()))
    config_file.write_text(raw_file, encoding="utf-8")

    typer.echo(f"Configuration file created - run commands under the lock with `lockward run {lock_name} -- <command>`")


@app.command()
def init(ctx: typer.Context) -> None:
    """Initialize the configuration file in current directory.

    Starts an interactive wizard to create the configuration file.
    """
    asyncio.run(_init(ctx.obj))


@app.command()
def serve(
    ctx: typer.Context,
    port: Annotated[int, typer.Option(help="Port to run the server on")] = 8600,
) -> None:
    """Starts an HTTP lock server - compatible with the terraform http backend lock endpoints."""
    start_server(port, config_file=ctx.obj)


def main() -> None:
    app()
