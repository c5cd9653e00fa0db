"""Command line interface for circleflow."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer
import yaml
from pydantic import ValidationError

from .config import load_config
from .contracts import WorkflowDefinition
from .engine import WorkflowEngine
from .errors import CircleflowError
from .persistence import AppUser, CircleRepository, Request, get_repository

T = TypeVar("T")

app = typer.Typer(help="CLI for circleflow approval workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
request_app = typer.Typer(help="Commands for running requests through workflows")
user_app = typer.Typer(help="Commands for managing directory users")

app.add_typer(workflow_app, name="workflow")
app.add_typer(request_app, name="request")
app.add_typer(user_app, name="user")


@app.callback()
def main(config: Optional[Path] = typer.Option(None, help="Path to a YAML config file")) -> None:
    """circleflow CLI entry point."""
    if config is not None:
        os.environ["CIRCLEFLOW_CONFIG"] = str(config)
    settings = load_config()
    logging.basicConfig(level=settings.log_level.upper())


def _with_repository(work: Callable[[CircleRepository], Awaitable[T]]) -> T:
    async def runner() -> T:
        repo = get_repository()
        try:
            return await work(repo)
        finally:
            await repo.close()

    return asyncio.run(runner())


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


@workflow_app.command("load")
def workflow_load(path: Path) -> None:
    """
    Load a workflow definition from a YAML or JSON file.

    The file holds one definition (``id``, ``name``, ``steps`` and optional
    ``settings``) in camelCase or snake_case.

    Example:
        circleflow workflow load ./workflows/purchase.yaml
    """
    if not path.exists():
        _fail("Specified path does not exist")
    data = yaml.safe_load(path.read_text())
    try:
        definition = WorkflowDefinition.model_validate(data or {})
    except ValidationError as exc:
        _fail(f"Invalid workflow definition: {exc}")

    _with_repository(lambda repo: repo.save_workflow_definition(definition))
    typer.echo(f"Loaded workflow {definition.id} ({len(definition.steps)} steps)")


@workflow_app.command("list")
def workflow_list(organization: Optional[str] = None) -> None:
    """List active workflow definitions."""
    workflows = _with_repository(lambda repo: repo.list_workflow_definitions(organization))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.name}\t{len(wf.steps)} steps")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show the steps of a workflow definition."""
    wf = _with_repository(lambda repo: repo.get_workflow_definition(workflow_id))
    if wf is None:
        _fail("Workflow not found")
    typer.echo(f"Workflow {wf.id}: {wf.name}")
    if wf.description:
        typer.echo(wf.description)
    for index, step in enumerate(wf.steps):
        label = f" - {step.name}" if step.name else ""
        typer.echo(f"{index}. [{step.type}] {step.id}{label}")


@user_app.command("add")
def user_add(
    user_id: str,
    organization: str,
    name: str = "",
    role: Optional[str] = None,
    department: Optional[str] = None,
    manager: Optional[str] = None,
    department_head: bool = False,
) -> None:
    """Add or replace a directory user used for approver resolution."""
    user = AppUser(
        id=user_id,
        organization_id=organization,
        display_name=name,
        role=role,
        department_id=department,
        manager_id=manager,
        is_department_head=department_head,
    )
    _with_repository(lambda repo: repo.save_user(user))
    typer.echo(f"Saved user {user_id}")


@request_app.command("create")
def request_create(creator: str, organization: str, title: str = "") -> None:
    """Create a draft request and print its id."""
    request = Request(creator_id=creator, organization_id=organization, title=title)
    stored = _with_repository(lambda repo: repo.create_request(request))
    typer.echo(stored.id)


@request_app.command("start")
def request_start(
    workflow_id: str,
    request_id: str,
    data: str = typer.Option("{}", help="Request data as a JSON object"),
) -> None:
    """Start a workflow for a request and print the step results."""
    try:
        request_data: Any = json.loads(data)
    except ValueError:
        _fail("--data must be valid JSON")
    if not isinstance(request_data, dict):
        _fail("--data must be a JSON object")

    async def work(repo: CircleRepository):
        return await WorkflowEngine(repo).start_workflow(workflow_id, request_id, request_data)

    try:
        results = _with_repository(work)
    except CircleflowError as exc:
        _fail(exc.message)
    for result in results:
        state = "ok" if result.success else "failed"
        if result.requires_user_action:
            state = "waiting"
        detail = result.error or result.message or ""
        typer.echo(f"{result.step_id}\t{result.step_type}\t{state}\t{detail}")


@request_app.command("status")
def request_status(workflow_id: str, request_id: str) -> None:
    """Show approval rows and execution history for a request."""

    async def work(repo: CircleRepository):
        return await WorkflowEngine(repo).get_status(workflow_id, request_id)

    try:
        status = _with_repository(work)
    except CircleflowError as exc:
        _fail(exc.message)
    typer.echo(f"Request {status.request_id}: {status.status}")
    for step in status.steps:
        typer.echo(f"- step {step.step_index} [{step.approver_user_id}]: {step.status}")
    for entry in status.executions:
        typer.echo(f"* {entry.created_at.isoformat()} {entry.action}")


@app.command("serve")
def serve(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from .api import create_app

    settings = load_config()
    uvicorn.run(
        create_app(settings),
        host=host or settings.api.host,
        port=port or settings.api.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    app()
