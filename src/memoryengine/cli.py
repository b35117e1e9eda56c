"""memoryengine CLI - run the memory pipeline against the configured storage."""
import asyncio
import json
from dataclasses import asdict
from typing import Awaitable, Callable, TypeVar

import click

from scitrera_app_framework import Variables, get_variables

T = TypeVar('T')


def _run(fn: Callable[[Variables], Awaitable[T]]) -> T:
    """Boot services, run ``fn(v)`` and shut down again."""
    from memoryengine.dependencies import running_engine

    async def _main() -> T:
        async with running_engine(get_variables()) as v:
            return await fn(v)

    return asyncio.run(_main())


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logs")
def cli(verbose: bool):
    """memoryengine - semantic memory for coaching conversations."""
    v = get_variables()  # get variables instance prior to preconfigure() call
    if verbose:
        v.set("LOGGING_LEVEL", "DEBUG")


@cli.command()
@click.option("--user", "-u", "user_id", required=True, help="User ID")
@click.option("--mode", "coaching_mode", default=None, help="Coaching mode (fitness, nutrition, wellness, general)")
@click.argument("message")
def process(user_id: str, coaching_mode: str, message: str):
    """Extract, deduplicate and link the facts in MESSAGE."""
    from memoryengine.services.memory import get_memory_service

    async def _process(v: Variables):
        return await get_memory_service(v).process_message(user_id, message, coaching_mode=coaching_mode)

    result = _run(_process)
    for fact, decision in zip(result.facts, result.decisions):
        memory_id = decision.memory.id if decision.memory else '-'
        click.echo(f"[{decision.action.value:6}] ({fact.category.value}) {fact.text} -> {memory_id}")
    for rel in result.relationships:
        click.echo(f"  {rel.from_id} --{rel.type.value}({rel.confidence:.2f})--> {rel.to_id}")
    if result.error:
        click.echo(f"Error: {result.error}", err=True)
        raise SystemExit(1)
    if not result.facts:
        click.echo("No facts extracted")


@cli.command()
@click.option("--user", "-u", "user_id", required=True, help="User ID")
@click.option("--mode", "coaching_mode", default=None, help="Coaching mode (fitness, nutrition, wellness, general)")
@click.option("--limit", "-n", default=None, type=int, help="Maximum results")
@click.option("--prompt", "as_prompt", is_flag=True, help="Print the prompt block instead of scores")
@click.argument("query")
def retrieve(user_id: str, coaching_mode: str, limit: int, as_prompt: bool, query: str):
    """Show the memories ranked for QUERY."""
    from memoryengine.services.memory import get_memory_service

    async def _retrieve(v: Variables):
        service = get_memory_service(v)
        results = await service.retrieve(user_id, query, coaching_mode=coaching_mode, limit=limit)
        return results, service.format_for_prompt(results)

    results, prompt = _run(_retrieve)
    if as_prompt:
        click.echo(prompt)
        return
    if not results:
        click.echo("No relevant memories")
    for r in results:
        click.echo(f"{r.relevance_score:.3f}  {r.retrieval_reason.value:21} ({r.memory.category.value}) {r.memory.content}")


@cli.command()
@click.option("--user", "-u", "user_id", default=None, help="User ID (default: all users)")
def consolidate(user_id: str):
    """Resolve contradictions, merge near-duplicates and expire stale memories."""
    from memoryengine.services.memory import get_memory_service

    async def _consolidate(v: Variables):
        return await get_memory_service(v).consolidate(user_id)

    _echo_json(asdict(_run(_consolidate)))


@cli.command()
def stats():
    """Print engine statistics as JSON."""
    from memoryengine.services.memory import get_memory_service

    async def _stats(v: Variables):
        return get_memory_service(v).get_stats()

    _echo_json(asdict(_run(_stats)))


@cli.command()
def version():
    """Show version information."""
    from memoryengine import __version__
    click.echo(f"memoryengine v{__version__}")


if __name__ == "__main__":
    cli()
