"""CLI entry point for Anvil."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click

from anvil import __version__
from anvil.config import Config, ConfigError, load_config


def _resolve_workspace(workspace: Path | None) -> Path:
    return (workspace or Path.cwd()).resolve()


def _configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), None)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, indent=2))


@click.group()
@click.version_option(version=__version__, prog_name="anvil")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to anvil.toml configuration file.",
)
@click.option("--log-level", default=None, help="Override [logging] level.")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, log_level: str | None) -> None:
    """Anvil: structured-output resilience for local models."""
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    _configure_logging(log_level or config.logging.level)
    ctx.obj["config"] = config


def _client(config: Config):
    from anvil.structured.protocol import StructuredClient

    return StructuredClient.from_config(config)


@cli.command()
@click.argument("instruction")
@click.option("--workspace", type=click.Path(exists=True, path_type=Path), default=None)
@click.option("--local", is_flag=True, default=False, help="Skip the model; use the local decomposition.")
@click.pass_context
def plan(ctx: click.Context, instruction: str, workspace: Path | None, local: bool) -> None:
    """Compress an instruction into a task plan."""
    from anvil.engine.compressor import compress_task, compress_task_local
    from anvil.workspace.project import harvest_context

    if local:
        _echo_json(compress_task_local(instruction).to_dict())
        return

    async def _plan():
        client = _client(ctx.obj["config"])
        try:
            context = harvest_context(_resolve_workspace(workspace))
            return await compress_task(client, instruction, context)
        finally:
            await client.close()

    _echo_json(asyncio.run(_plan()).to_dict())


@cli.command(name="next-action")
@click.argument("instruction")
@click.option("--workspace", type=click.Path(exists=True, path_type=Path), default=None)
@click.option("--active-file", type=click.Path(path_type=Path), default=None)
@click.option("--prior", type=int, default=0, show_default=True, help="Tool calls already made.")
@click.option("--local", is_flag=True, default=False, help="Skip the model; use the local planner.")
@click.pass_context
def next_action(
    ctx: click.Context,
    instruction: str,
    workspace: Path | None,
    active_file: Path | None,
    prior: int,
    local: bool,
) -> None:
    """Plan an instruction and print the next tool call."""
    from anvil.engine.compressor import compress_task, compress_task_local
    from anvil.engine.planner import (
        GenerativeNextAction,
        LocalNextAction,
        PlannerInput,
        ToolResult,
    )
    from anvil.workspace.project import harvest_context

    context = harvest_context(_resolve_workspace(workspace), active_file)
    previous = [ToolResult(tool="prior") for _ in range(max(0, prior))]

    if local:
        planner_input = PlannerInput(compress_task_local(instruction), context, previous)
        _echo_json(LocalNextAction().choose(planner_input).to_dict())
        return

    async def _next():
        client = _client(ctx.obj["config"])
        try:
            task_plan = await compress_task(client, instruction, context)
            planner_input = PlannerInput(task_plan, context, previous)
            return await GenerativeNextAction(client).next_action(planner_input)
        finally:
            await client.close()

    _echo_json(asyncio.run(_next()).to_dict())


@cli.command()
@click.argument("instruction")
@click.option("--workspace", type=click.Path(exists=True, path_type=Path), default=None)
@click.option("--active-file", type=click.Path(path_type=Path), default=None)
@click.pass_context
def run(ctx: click.Context, instruction: str, workspace: Path | None, active_file: Path | None) -> None:
    """Run the full work-unit pipeline for one instruction."""
    from anvil.engine.session import WorkSession
    from anvil.utils.concurrency import shutdown_blocking_io

    config = ctx.obj["config"]

    async def _run():
        client = _client(config)
        try:
            session = WorkSession(
                config, client, _resolve_workspace(workspace), active_file=active_file,
            )
            return await session.run(instruction)
        finally:
            await client.close()

    try:
        report = asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("Cancelled.", err=True)
        sys.exit(130)
    finally:
        shutdown_blocking_io()
    _echo_json(report.to_dict())


@cli.command()
@click.argument("prompt")
@click.pass_context
def ask(ctx: click.Context, prompt: str) -> None:
    """Stream a free-text answer from the default model."""
    from anvil.models.base import Message
    from anvil.models.router import ModelRouter

    async def _ask():
        router = ModelRouter.from_config(ctx.obj["config"])
        try:
            async for chunk in router.select().stream([Message.user(prompt)]):
                if chunk.text:
                    click.echo(chunk.text, nl=False)
            click.echo()
        finally:
            await router.close()

    try:
        asyncio.run(_ask())
    except Exception as e:
        click.echo(f"Request failed: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Check that every configured model responds."""
    from anvil.models.router import ModelRouter

    async def _health():
        router = ModelRouter.from_config(ctx.obj["config"])
        try:
            return await router.health()
        finally:
            await router.close()

    results = asyncio.run(_health())
    for role, ok in results.items():
        click.echo(f"  {role}: {'ok' if ok else 'unavailable'}")
    if not all(results.values()):
        sys.exit(1)


@cli.group()
def memory() -> None:
    """Inspect project memory."""


@memory.command(name="show")
@click.option("--workspace", type=click.Path(exists=True, path_type=Path), default=None)
@click.pass_context
def memory_show(ctx: click.Context, workspace: Path | None) -> None:
    """Print the memory context injected into prompts."""
    from anvil.state.memory import MemoryOptions, MemoryStore

    config = ctx.obj["config"]
    store = MemoryStore(_resolve_workspace(workspace), MemoryOptions.from_config(config.memory))
    context = store.load_context()
    click.echo(context if context else "No project memory.")


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
