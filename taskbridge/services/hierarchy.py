"""Todoist project tree -> GitHub org/repo routing.

Parent projects listed in the org mappings stand for GitHub organizations;
their direct children stand for repositories (repo name == project name).
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from taskbridge.schemas import Project, Routing

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Sync configuration is missing or invalid; the cycle cannot run."""


def parse_org_mappings(raw: Optional[str]) -> Dict[str, str]:
    """Parse the `{"<parent project id>": "<github org>"}` mapping."""
    if raw is None or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"ORG_MAPPINGS is not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise ConfigurationError(f"ORG_MAPPINGS must be a JSON object, got {type(parsed).__name__}")
    mappings: Dict[str, str] = {}
    for key, value in parsed.items():
        if not isinstance(value, str):
            raise ConfigurationError(f'ORG_MAPPINGS value for key "{key}" must be a string')
        mappings[str(key)] = value
    logger.info(f"Loaded {len(mappings)} org mapping(s)")
    return mappings


@dataclass(frozen=True)
class ParentGroup:
    id: str
    name: str
    org_name: str


@dataclass(frozen=True)
class SubGroup:
    id: str
    name: str
    parent_id: str
    org_name: str
    repo_name: str

    @property
    def full_repo_name(self) -> str:
        return f"{self.org_name}/{self.repo_name}"

    def routing(self) -> Routing:
        return Routing(
            group_id=self.id,
            org_name=self.org_name,
            repo_name=self.repo_name,
            full_repo_name=self.full_repo_name,
        )


@dataclass
class GroupHierarchy:
    parent_groups: Dict[str, ParentGroup] = field(default_factory=dict)
    sub_groups: Dict[str, SubGroup] = field(default_factory=dict)
    repo_to_group: Dict[str, str] = field(default_factory=dict)

    @property
    def sub_group_ids(self) -> List[str]:
        return list(self.sub_groups.keys())

    def group_for_repo(self, full_repo_name: str) -> Optional[SubGroup]:
        group_id = self.repo_to_group.get(full_repo_name)
        return self.sub_groups.get(group_id) if group_id else None


def build_group_hierarchy(groups: List[Project], org_mappings: Dict[str, str]) -> GroupHierarchy:
    hierarchy = GroupHierarchy()

    # Pass 1: mapped projects are orgs
    for group in groups:
        org = org_mappings.get(str(group.id))
        if org:
            hierarchy.parent_groups[str(group.id)] = ParentGroup(id=str(group.id), name=group.name, org_name=org)

    # Pass 2: their direct children are repos
    for group in groups:
        if not group.parent_id:
            continue
        parent = hierarchy.parent_groups.get(str(group.parent_id))
        if parent is None:
            continue
        sub = SubGroup(
            id=str(group.id),
            name=group.name,
            parent_id=parent.id,
            org_name=parent.org_name,
            repo_name=group.name,
        )
        hierarchy.sub_groups[sub.id] = sub
        hierarchy.repo_to_group[sub.full_repo_name] = sub.id

    logger.info(
        f"Built hierarchy: {len(hierarchy.parent_groups)} parent(s), {len(hierarchy.sub_groups)} sub-group(s)"
    )
    return hierarchy
