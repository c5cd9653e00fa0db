from __future__ import annotations

from typing import Any, Callable, Awaitable

import pytest
import pytest_asyncio

from circleflow.contracts import WorkflowDefinition
from circleflow.persistence import AppUser, InMemoryRepository, Request

ORG = "org-1"


@pytest.fixture
def repo() -> InMemoryRepository:
    return InMemoryRepository()


@pytest_asyncio.fixture
async def users(repo: InMemoryRepository) -> dict[str, AppUser]:
    people = [
        AppUser(id="u-req", organization_id=ORG, display_name="Rita Requester",
                department_id="d-1", manager_id="u-mgr"),
        AppUser(id="u-mgr", organization_id=ORG, display_name="Max Manager", role="manager"),
        AppUser(id="u-head", organization_id=ORG, display_name="Hana Head",
                department_id="d-1", is_department_head=True),
        AppUser(id="u-fin", organization_id=ORG, display_name="Finn Finance", role="finance"),
    ]
    for person in people:
        await repo.save_user(person)
    return {p.id: p for p in people}


@pytest_asyncio.fixture
async def request_obj(repo: InMemoryRepository, users) -> Request:
    return await repo.create_request(
        Request(creator_id="u-req", organization_id=ORG, title="Laptop purchase")
    )


@pytest.fixture
def make_workflow(repo: InMemoryRepository) -> Callable[..., Awaitable[WorkflowDefinition]]:
    async def factory(steps: list[dict[str, Any]], **extra: Any) -> WorkflowDefinition:
        definition = WorkflowDefinition.model_validate(
            {"id": extra.pop("id", "wf-1"), "name": "Purchase", "organizationId": ORG,
             "steps": steps, **extra}
        )
        await repo.save_workflow_definition(definition)
        return definition

    return factory
