"""Task-graph data models consumed by the build engine."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from shipgate.engine.config import (
    QUALITY_GATES,
    RISK_LEVELS,
    require_non_negative_int,
    validate_choice,
)

TASK_GRAPH_VERSION = "1.2"
DEFAULT_QUALITY_GATES: tuple[str, ...] = ("review", "tests")


def _require_string(value: Any, field_name: str) -> str:
    """Validate and return a non-empty string."""
    if not isinstance(value, str):
        raise ValueError(f"Expected '{field_name}' to be a string.")
    cleaned = value.strip()
    if not cleaned:
        raise ValueError(f"Expected '{field_name}' to be non-empty.")
    return cleaned


def _require_string_list(value: Any, field_name: str) -> list[str]:
    """Validate a list of non-empty strings."""
    if not isinstance(value, list):
        raise ValueError(f"Expected '{field_name}' to be a list.")
    return [_require_string(item, f"{field_name}[{index}]") for index, item in enumerate(value)]


def _optional_string_list(value: Any, field_name: str, default: tuple[str, ...] = ()) -> list[str]:
    """Validate an optional list of strings, falling back to default."""
    if value is None:
        return list(default)
    return _require_string_list(value, field_name)


def _require_list_of_dicts(value: Any, field_name: str) -> list[dict[str, Any]]:
    """Validate list of dict objects."""
    if not isinstance(value, list):
        raise ValueError(f"Expected '{field_name}' to be a list.")
    for index, item in enumerate(value):
        if not isinstance(item, dict):
            raise ValueError(f"Expected '{field_name}[{index}]' to be an object.")
    return value


@dataclass(frozen=True)
class Task:
    """One executable unit of the task graph."""

    task_id: str
    name: str = ""
    depends_on: tuple[str, ...] = ()
    tests: tuple[str, ...] = ()
    acceptance_criteria: tuple[str, ...] = ()
    quality_gates: tuple[str, ...] = DEFAULT_QUALITY_GATES
    risk_controls: tuple[str, ...] = ()
    retries: int = 0
    risk: str = "low"
    blast_radius: str = ""

    def __post_init__(self) -> None:
        """Validate enumerated fields and retry budget."""
        validate_choice(self.risk, "risk", RISK_LEVELS)
        for gate in self.quality_gates:
            validate_choice(gate, "qualityGates", QUALITY_GATES)
        require_non_negative_int(self.retries, "retries")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        """Create a task from a task-graph JSON object."""
        task_id = _require_string(data.get("id"), "id")
        gates = _optional_string_list(
            data.get("qualityGates"), "qualityGates", DEFAULT_QUALITY_GATES
        )
        blast_radius = data.get("blastRadius", "")
        if not isinstance(blast_radius, str):
            raise ValueError(f"Expected 'blastRadius' of task {task_id} to be a string.")
        name = data.get("name", task_id)
        return cls(
            task_id=task_id,
            name=name if isinstance(name, str) else task_id,
            depends_on=tuple(_optional_string_list(data.get("dependsOn"), "dependsOn")),
            tests=tuple(_optional_string_list(data.get("tests"), "tests")),
            acceptance_criteria=tuple(
                _optional_string_list(data.get("acceptanceCriteria"), "acceptanceCriteria")
            ),
            quality_gates=tuple(gates),
            risk_controls=tuple(_optional_string_list(data.get("riskControls"), "riskControls")),
            retries=data.get("retries", 0),
            risk=data.get("risk", "low"),
            blast_radius=blast_radius,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the task-graph JSON representation."""
        return {
            "id": self.task_id,
            "name": self.name,
            "dependsOn": list(self.depends_on),
            "tests": list(self.tests),
            "acceptanceCriteria": list(self.acceptance_criteria),
            "qualityGates": list(self.quality_gates),
            "riskControls": list(self.risk_controls),
            "retries": self.retries,
            "risk": self.risk,
            "blastRadius": self.blast_radius,
        }


@dataclass(frozen=True)
class Story:
    """Grouping of tasks; carries no execution semantics."""

    story_id: str
    name: str
    tasks: tuple[Task, ...] = ()


@dataclass(frozen=True)
class Epic:
    """Grouping of stories; carries no execution semantics."""

    epic_id: str
    name: str
    stories: tuple[Story, ...] = ()


@dataclass(frozen=True)
class TaskGraph:
    """Epics -> stories -> tasks, flattened for execution."""

    epics: tuple[Epic, ...] = field(default_factory=tuple)
    version: str = TASK_GRAPH_VERSION

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskGraph:
        """Parse and validate a task-graph payload."""
        if not isinstance(data, dict):
            raise ValueError("Task graph payload must be an object.")
        version = data.get("version", TASK_GRAPH_VERSION)
        if version != TASK_GRAPH_VERSION:
            raise ValueError(f"Unsupported task graph version: {version!r}")
        epics: list[Epic] = []
        for epic_index, epic in enumerate(_require_list_of_dicts(data.get("epics"), "epics")):
            stories: list[Story] = []
            raw_stories = _require_list_of_dicts(
                epic.get("stories", []), f"epics[{epic_index}].stories"
            )
            for story_index, story in enumerate(raw_stories):
                raw_tasks = _require_list_of_dicts(
                    story.get("tasks", []),
                    f"epics[{epic_index}].stories[{story_index}].tasks",
                )
                stories.append(
                    Story(
                        story_id=_require_string(story.get("id"), "story.id"),
                        name=str(story.get("name", "")),
                        tasks=tuple(Task.from_dict(task) for task in raw_tasks),
                    )
                )
            epics.append(
                Epic(
                    epic_id=_require_string(epic.get("id"), "epic.id"),
                    name=str(epic.get("name", "")),
                    stories=tuple(stories),
                )
            )
        return cls(epics=tuple(epics), version=version)

    @classmethod
    def from_tasks(cls, tasks: list[Task]) -> TaskGraph:
        """Wrap a flat task list in a single epic/story."""
        story = Story(story_id="story-1", name="tasks", tasks=tuple(tasks))
        return cls(epics=(Epic(epic_id="epic-1", name="tasks", stories=(story,)),))

    def flatten(self) -> list[Task]:
        """Return every task in declaration order."""
        return [task for epic in self.epics for story in epic.stories for task in story.tasks]

    def to_dict(self) -> dict[str, Any]:
        """Return the task-graph JSON representation."""
        return {
            "version": self.version,
            "epics": [
                {
                    "id": epic.epic_id,
                    "name": epic.name,
                    "stories": [
                        {
                            "id": story.story_id,
                            "name": story.name,
                            "tasks": [task.to_dict() for task in story.tasks],
                        }
                        for story in epic.stories
                    ],
                }
                for epic in self.epics
            ],
        }


def load_task_graph(path: Path) -> TaskGraph:
    """Load a task graph from a JSON or YAML file."""
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            payload = yaml.safe_load(text)
        else:
            payload = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ValueError(f"Task graph at {path} is not valid: {exc}") from exc
    return TaskGraph.from_dict(payload)
