"""Per-cycle lookup caches (sections by group, milestones by repo)"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from taskbridge.services.github_client import GitHubClient
from taskbridge.services.http import ApiError
from taskbridge.services.todoist_client import TodoistClient

logger = logging.getLogger(__name__)


class SectionCache:
    """group_id -> {section name -> id} plus the inverse."""

    def __init__(self, todoist: TodoistClient):
        self.todoist = todoist
        self._by_name: Dict[str, Dict[str, str]] = {}
        self._by_id: Dict[str, Dict[str, str]] = {}

    def _load(self, group_id: str) -> None:
        sections = self.todoist.list_sections(group_id)
        self._by_name[group_id] = {s.name: s.id for s in sections}
        self._by_id[group_id] = {s.id: s.name for s in sections}

    def prime(self, group_ids: Iterable[str]) -> None:
        """Load sections for every group; a failing group gets an empty cache."""
        total = 0
        count = 0
        for group_id in group_ids:
            count += 1
            try:
                self._load(group_id)
                total += len(self._by_name[group_id])
            except Exception as e:
                logger.error(f"Failed to fetch sections for project {group_id}: {e}")
                self._by_name[group_id] = {}
                self._by_id[group_id] = {}
        logger.info(f"Fetched {total} section(s) across {count} project(s)")

    def lookup(self, group_id: str, name: str) -> Optional[str]:
        return self._by_name.get(group_id, {}).get(name)

    def register(self, group_id: str, name: str, section_id: str) -> None:
        self._by_name.setdefault(group_id, {})[name] = section_id
        self._by_id.setdefault(group_id, {})[section_id] = name

    def get_or_create(self, group_id: str, name: str) -> str:
        """Section id for `name`, refreshing and then creating on a miss."""
        section_id = self.lookup(group_id, name)
        if section_id:
            return section_id

        try:
            self._load(group_id)
            section_id = self.lookup(group_id, name)
            if section_id:
                return section_id
        except Exception as e:
            logger.error(f"Failed to refresh sections for project {group_id}: {e}")

        try:
            section = self.todoist.create_section(group_id, name)
        except ApiError as e:
            # Someone else created it between our refresh and create
            if e.status_code == 409 or "already exists" in e.message:
                logger.debug(f"Section '{name}' already exists in project {group_id}, refreshing")
                self._load(group_id)
                section_id = self.lookup(group_id, name)
                if section_id:
                    return section_id
                logger.warning(f"Section '{name}' not found in project {group_id} after conflict")
            raise
        logger.info(f"Created section '{name}' in project {group_id}")
        self.register(group_id, section.name, section.id)
        return section.id

    def name_for(self, group_id: str, section_id: str) -> Optional[str]:
        """Section name for an id, refreshing the group once on a miss."""
        name = self._by_id.get(group_id, {}).get(section_id)
        if name is not None:
            return name
        try:
            self._load(group_id)
        except Exception as e:
            logger.warning(f"Failed to refresh sections for project {group_id}: {e}")
            return None
        return self._by_id.get(group_id, {}).get(section_id)


class MilestoneCache:
    """owner/repo -> {title <-> number}, loaded lazily per repo."""

    def __init__(self, github: GitHubClient):
        self.github = github
        self._by_title: Dict[str, Dict[str, int]] = {}
        self._by_number: Dict[str, Dict[int, str]] = {}

    def _ensure(self, owner: str, repo: str) -> str:
        key = f"{owner}/{repo}"
        if key not in self._by_title:
            milestones = self.github.list_milestones(owner, repo)
            self._by_title[key] = {m.title: m.number for m in milestones}
            self._by_number[key] = {m.number: m.title for m in milestones}
        return key

    def number_for(self, owner: str, repo: str, title: str) -> Optional[int]:
        key = self._ensure(owner, repo)
        return self._by_title[key].get(title)

    def title_for(self, owner: str, repo: str, number: int) -> Optional[str]:
        key = self._ensure(owner, repo)
        return self._by_number[key].get(number)


@dataclass
class SyncContext:
    """What one cycle shares between pollers, reconciliation and backfill."""

    github: GitHubClient
    todoist: TodoistClient
    sections: SectionCache
    milestones: MilestoneCache

    @classmethod
    def create(cls, github: GitHubClient, todoist: TodoistClient) -> "SyncContext":
        return cls(
            github=github,
            todoist=todoist,
            sections=SectionCache(todoist),
            milestones=MilestoneCache(github),
        )
