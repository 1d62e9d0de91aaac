"""Validated shapes for everything read from GitHub and Todoist.

External payloads are run through these models at the client boundary so the
sync code only ever sees typed values. A payload that does not fit raises
`SchemaError` instead of being coerced into something half-valid.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

M = TypeVar("M", bound=BaseModel)


class SchemaError(Exception):
    """An external response did not match the expected shape."""

    def __init__(self, source: str, errors: List[Dict[str, Any]]):
        self.source = source
        self.errors = errors
        first = errors[0] if errors else {}
        where = ".".join(str(p) for p in first.get("loc", ())) or "<root>"
        super().__init__(f"Invalid {source} payload at {where}: {first.get('msg', 'unknown error')}")


def parse_model(model: Type[M], data: Any, source: str) -> M:
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise SchemaError(source, e.errors()) from e


def parse_list(model: Type[M], data: Any, source: str) -> List[M]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise SchemaError(source, [{"loc": (), "msg": f"expected a list, got {type(data).__name__}"}])
    return [parse_model(model, item, source) for item in data]


class _Base(BaseModel):
    # Unknown API fields are dropped; numeric ids are accepted as strings.
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class Routing(_Base):
    """Sync-assigned metadata telling which repo/group an entity belongs to."""

    group_id: str
    org_name: str
    repo_name: str
    full_repo_name: str


# --- GitHub ---


class Milestone(_Base):
    number: int
    title: str


class Issue(_Base):
    id: int
    number: int
    title: str
    html_url: str
    state: Literal["open", "closed"]
    body: Optional[str] = None
    milestone: Optional[Milestone] = None
    pull_request: Optional[Dict[str, Any]] = None
    updated_at: Optional[str] = None

    routing: Optional[Routing] = None

    @property
    def is_pull_request(self) -> bool:
        return self.pull_request is not None

    @property
    def milestone_title(self) -> Optional[str]:
        return self.milestone.title if self.milestone else None

    @property
    def ref(self) -> str:
        repo = self.routing.full_repo_name if self.routing else "?"
        return f"{repo}#{self.number}"


class Repository(_Base):
    name: str
    full_name: str
    archived: bool = False
    disabled: bool = False

    @property
    def owner(self) -> str:
        return self.full_name.split("/", 1)[0]


# --- Todoist ---


class Project(_Base):
    id: str
    name: str
    parent_id: Optional[str] = None


class Section(_Base):
    id: str
    project_id: str
    name: str


class Task(_Base):
    id: str
    content: str = ""
    description: Optional[str] = ""
    project_id: str
    section_id: Optional[str] = None
    # Sync API reports `checked`, REST API reports `is_completed`
    checked: Optional[bool] = None
    is_completed: Optional[bool] = None
    is_deleted: bool = False

    routing: Optional[Routing] = None

    @property
    def completed(self) -> bool:
        return bool(self.checked) or bool(self.is_completed)


class CompletedTask(_Base):
    id: str
    content: str = ""
    # None means the feed did not include the description at all
    description: Optional[str] = None
    project_id: str
    completed_at: str

    routing: Optional[Routing] = None

    @property
    def completed_at_dt(self) -> datetime:
        return datetime.fromisoformat(self.completed_at.replace("Z", "+00:00"))

    @classmethod
    def from_feed_item(cls, item: Any) -> "CompletedTask":
        """Build from a `completed/get_all` item (description lives in item_object)."""
        if not isinstance(item, dict):
            raise SchemaError("todoist completed item", [{"loc": (), "msg": "expected an object"}])
        description = None
        for holder in ("item_object", "item"):
            obj = item.get(holder)
            if isinstance(obj, dict) and "description" in obj:
                description = obj.get("description") or ""
                break
        data = {
            "id": item.get("task_id", item.get("id")),
            "content": item.get("content") or "",
            "description": description,
            "project_id": item.get("project_id"),
            "completed_at": item.get("completed_at"),
        }
        return parse_model(cls, data, "todoist completed item")


class SyncDelta(_Base):
    items: List[Task] = Field(default_factory=list)
    sync_token: str
    full_sync: bool = False
