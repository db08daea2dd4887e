"""Materialize an accepted breakdown into Epic / Story / Task records.

The draft tree is walked breadth-first with an explicit worklist. Each
entry carries the real id of its already-created parent, so ids are
assigned top-down and a child never exists without its parent.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, replace
from typing import Sequence, Union

import structlog

from keystone.core.errors import ValidationFailure
from keystone.core.models import (
    Epic,
    EpicDraft,
    RequirementAnalysis,
    Story,
    StoryDraft,
    Task,
    TaskDraft,
)
from keystone.core.store import EntityStore

logger = structlog.get_logger()

_Node = Union[EpicDraft, StoryDraft, TaskDraft]


@dataclass(frozen=True)
class CascadeResult:
    project_id: str
    epics: list[Epic] = field(default_factory=list)
    stories: list[Story] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    analysis: RequirementAnalysis | None = None

    @property
    def created(self) -> int:
        return len(self.epics) + len(self.stories) + len(self.tasks)


def cascade_breakdown(
    store: EntityStore,
    epics: Sequence[EpicDraft],
    *,
    project_id: str,
    generated_by: str | None = None,
    requirement_id: str | None = None,
    assign_to_agent: bool = True,
) -> CascadeResult:
    """Create every epic, story, and task in ``epics`` under ``project_id``.

    Runs under the store lock, so the whole tree appears in one step.
    Raises ValidationFailure if the project does not exist; nothing is
    created in that case.

    With ``assign_to_agent`` unassigned tasks go to ``generated_by`` and are
    flagged as agent-assigned.
    """
    created_epics: list[Epic] = []
    created_stories: list[Story] = []
    created_tasks: list[Task] = []

    with store.locked():
        if store.get_project(project_id) is None:
            raise ValidationFailure("project_id", f"unknown project '{project_id}'")

        worklist: deque[tuple[_Node, str]] = deque((e, project_id) for e in epics)
        while worklist:
            node, parent_id = worklist.popleft()

            if isinstance(node, EpicDraft):
                epic = store.create_epic(node, project_id=parent_id, generated_by=generated_by)
                created_epics.append(epic)
                worklist.extend((s, epic.id) for s in node.stories)

            elif isinstance(node, StoryDraft):
                story = store.create_story(node, epic_id=parent_id, generated_by=generated_by)
                created_stories.append(story)
                worklist.extend((t, story.id) for t in node.tasks)

            else:
                assignee = node.assigned_to
                agent_assigned = node.is_agent_assigned
                if assign_to_agent and assignee is None and generated_by:
                    assignee, agent_assigned = generated_by, True
                task = store.create_task(
                    replace(
                        node,
                        project_id=project_id,
                        story_id=parent_id,
                        requirement_id=requirement_id or node.requirement_id,
                        generated_by=generated_by,
                        assigned_to=assignee,
                        is_agent_assigned=agent_assigned,
                    ),
                    announce=False,
                )
                created_tasks.append(task)

    logger.info(
        "breakdown_cascaded",
        project_id=project_id,
        epics=len(created_epics),
        stories=len(created_stories),
        tasks=len(created_tasks),
        generated_by=generated_by,
    )
    return CascadeResult(
        project_id=project_id,
        epics=created_epics,
        stories=created_stories,
        tasks=created_tasks,
    )
