"""Command line interface for operating flowguard workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer

from .definitions import load_definitions
from .errors import FlowguardError, StateNotFound, WorkflowNotFound
from .persistence import get_repository
from .runtime import Runtime, build_runtime

T = TypeVar("T")

app = typer.Typer(help="CLI for flowguard workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for defining and driving workflows")
ops_app = typer.Typer(help="Operational commands: queues, dead letters, breakers")
dlq_app = typer.Typer(help="Inspect and requeue dead-lettered jobs")
worker_app = typer.Typer(help="Commands for running background workers")

app.add_typer(workflow_app, name="workflow")
app.add_typer(ops_app, name="ops")
ops_app.add_typer(dlq_app, name="dlq")
app.add_typer(worker_app, name="worker")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level"),
) -> None:
    """flowguard CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run(fn: Callable[[Runtime], Awaitable[T]]) -> T:
    """Run ``fn`` against a started runtime, exiting with code 1 on workflow errors."""

    async def go() -> T:
        runtime = build_runtime(repository=get_repository())
        await runtime.start()
        try:
            return await fn(runtime)
        finally:
            await runtime.stop()

    try:
        return asyncio.run(go())
    except FlowguardError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


async def _resolve_workflow(runtime: Runtime, workflow: str) -> int:
    if workflow.isdigit():
        return int(workflow)
    record = await runtime.repository.get_workflow_by_name(workflow)
    if record is None:
        raise WorkflowNotFound(f"Workflow not found: {workflow}")
    return record.id


async def _resolve_state(runtime: Runtime, workflow_id: int, state: str) -> int:
    if state.isdigit():
        return int(state)
    graph = await runtime.engine.graph(workflow_id)
    record = graph.state_by_name(state)
    if record is None:
        raise StateNotFound(state)
    return record.id


@workflow_app.command("load")
def workflow_load(path: Path) -> None:
    """
    Create workflows from a YAML definition file.

    Existing workflows (matched by name) only gain the states and transitions
    they are missing.

    Example:
        flowguard workflow load ./workflows/order.yaml
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    definitions = load_definitions(str(path))
    workflows = _run(lambda runtime: runtime.seed(definitions))
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.name}")


@workflow_app.command("seed")
def workflow_seed() -> None:
    """Create the built-in ORDER_FLOW and SERVICE_FLOW workflows."""
    workflows = _run(lambda runtime: runtime.seed())
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.name}")


@workflow_app.command("graph")
def workflow_graph(workflow: str) -> None:
    """Print a workflow's states (with policies) and transitions as JSON."""

    async def go(runtime: Runtime):
        return await runtime.engine.get_graph(await _resolve_workflow(runtime, workflow))

    _echo_json(_run(go))


@workflow_app.command("start")
def workflow_start(
    workflow: str,
    entity_type: str,
    entity_id: str,
    idempotency_key: Optional[str] = typer.Option(None, help="Return the same instance on repeats"),
) -> None:
    """
    Start an instance of a workflow for a business entity.

    Example:
        flowguard workflow start ORDER_FLOW ORDER 42
        # Output: Instance 1 started in CREATED
    """

    async def go(runtime: Runtime):
        workflow_id = await _resolve_workflow(runtime, workflow)
        instance = await runtime.engine.start_workflow(
            workflow_id, entity_type, entity_id, idempotency_key
        )
        graph = await runtime.engine.graph(workflow_id)
        return instance, graph.state(instance.current_state).name

    instance, state_name = _run(go)
    typer.echo(f"Instance {instance.id} started in {state_name}")


@workflow_app.command("event")
def workflow_event(
    instance_id: int,
    event: str,
    actor: Optional[str] = typer.Option(None, help="Who triggered the event"),
) -> None:
    """Apply an event to an instance, following the edge it triggers."""

    async def go(runtime: Runtime):
        instance = await runtime.engine.apply_event(instance_id, event, actor)
        graph = await runtime.engine.graph(instance.workflow_id)
        return graph.state(instance.current_state).name

    typer.echo(f"Instance {instance_id} is now {_run(go)}")


@workflow_app.command("move")
def workflow_move(
    instance_id: int,
    state: str,
    actor: Optional[str] = typer.Option(None, help="Who requested the move"),
    delay_ms: int = typer.Option(0, help="Enqueue the move to run after this delay"),
) -> None:
    """Move an instance to a state (by name or id), now or after a delay."""

    async def go(runtime: Runtime):
        instance = await runtime.repository.get_instance(instance_id)
        if instance is None:
            return None
        state_id = await _resolve_state(runtime, instance.workflow_id, state)
        return await runtime.engine.move_workflow(instance_id, state_id, actor, delay_ms)

    result = _run(go)
    if result is None:
        typer.echo("Instance not found")
        raise typer.Exit(code=1)
    if delay_ms > 0:
        typer.echo(f"Transition scheduled as job {result.id}")
    else:
        typer.echo(f"Instance {instance_id} moved")


@workflow_app.command("show")
def workflow_show(instance_id: int) -> None:
    """
    Show an instance's current state and its transition history.

    Example:
        flowguard workflow show 1
        # Output: Instance 1 (ORDER:42): CANCELLED
        #         - CREATED -> CANCELLED by user-7 (2024-01-01 10:00:00+00:00)
    """

    async def go(runtime: Runtime):
        instance = await runtime.repository.get_instance(instance_id)
        if instance is None:
            return None
        graph = await runtime.engine.graph(instance.workflow_id)
        history = await runtime.repository.get_history(instance_id)
        branches = await runtime.repository.list_branches(instance_id)
        return instance, graph, history, branches

    result = _run(go)
    if result is None:
        typer.echo("Instance not found")
        raise typer.Exit(code=1)
    instance, graph, history, branches = result
    typer.echo(
        f"Instance {instance.id} ({instance.entity_type}:{instance.entity_id}): "
        f"{graph.state(instance.current_state).name}"
    )
    for step in reversed(history):
        source = graph.state(step.from_state).name if step.from_state is not None else "-"
        typer.echo(
            f"- {source} -> {graph.state(step.to_state).name}"
            + (f" by {step.action_by}" if step.action_by else "")
            + f" ({step.changed_at})"
        )
    for branch in branches:
        typer.echo(
            f"  branch {branch.id}: {graph.state(branch.state_id).name} {branch.status.value}"
        )


@ops_app.command("queue-health")
def ops_queue_health() -> None:
    """Print job counts per status for the workflow queue."""
    stats = _run(lambda runtime: runtime.jobs.queue_stats())
    for name, value in stats.model_dump().items():
        typer.echo(f"{name}\t{value}")


@dlq_app.command("list")
def dlq_list(limit: int = typer.Option(20, help="Maximum entries to show")) -> None:
    """List the most recent dead-lettered jobs."""
    dead = _run(lambda runtime: runtime.jobs.list_dead_letters(limit))
    if not dead:
        typer.echo("No dead letters")
        return
    for item in dead:
        typer.echo(f"{item.id}\t{item.name}\t{item.attempts_made}\t{item.failed_reason}")


@dlq_app.command("requeue")
def dlq_requeue(dead_letter_id: str) -> None:
    """Put a dead-lettered job back on the queue with a fresh attempt budget."""
    job = _run(lambda runtime: runtime.jobs.requeue_dead_letter(dead_letter_id))
    typer.echo(f"Requeued as job {job.id}")


@ops_app.command("breakers")
def ops_breakers() -> None:
    """Print the circuit breaker snapshot of this process."""
    snapshot = _run(lambda runtime: _breaker_snapshot(runtime))
    if not snapshot:
        typer.echo("No breakers")
        return
    _echo_json(snapshot)


async def _breaker_snapshot(runtime: Runtime):
    return runtime.breakers.snapshot()


@worker_app.command("run")
def worker_run(
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """
    Run the job worker, recurring scans and the outbox relay.

    Example:
        flowguard worker run --lifespan 300
    """
    runtime = build_runtime(repository=get_repository())
    typer.echo(f"Starting worker on queue {runtime.config.scheduler.queue_name}")
    asyncio.run(runtime.run_worker(lifespan))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
