"""In-memory GitHub / Todoist stand-ins shared by the sync tests."""
from typing import Dict, List, Optional, Tuple

from taskbridge.schemas import (
    CompletedTask,
    Issue,
    Milestone,
    Project,
    Repository,
    Routing,
    Section,
    SyncDelta,
    Task,
)
from taskbridge.services.http import ApiError
from taskbridge.services.links import parse_issue_url
from taskbridge.services.todoist_client import BatchCreateResult, LinkedTaskRef


def make_routing(group_id="200", org="acme", repo="widgets"):
    return Routing(group_id=group_id, org_name=org, repo_name=repo, full_repo_name=f"{org}/{repo}")


def make_issue(number, title="Issue", state="open", milestone=None, org="acme", repo="widgets", routing=True):
    return Issue(
        id=1000 + number,
        number=number,
        title=title,
        html_url=f"https://github.com/{org}/{repo}/issues/{number}",
        state=state,
        milestone=Milestone(number=1, title=milestone) if milestone else None,
        routing=make_routing(org=org, repo=repo) if routing else None,
    )


class FakeGitHub:
    def __init__(self):
        self.issues: Dict[Tuple[str, str, int], Issue] = {}
        self.milestones: Dict[str, List[Milestone]] = {}
        self.updated: Dict[str, List[Issue]] = {}
        self.failing_repos = set()
        self.calls = []
        self._next_number = 100
        self.org_repos: Dict[str, List[Repository]] = {}

    def add(self, issue: Issue) -> Issue:
        owner, repo = issue.html_url.split("/")[3:5]
        self.issues[(owner, repo, issue.number)] = issue
        return issue

    def list_issues_updated_since(self, owner, repo, since):
        self.calls.append(("list_issues_updated_since", f"{owner}/{repo}", since))
        if f"{owner}/{repo}" in self.failing_repos:
            raise ApiError("GitHub", 502, "bad gateway")
        return list(self.updated.get(f"{owner}/{repo}", []))

    def iter_issues(self, owner, repo, state="open", max_pages=100):
        if f"{owner}/{repo}" in self.failing_repos:
            raise ApiError("GitHub", 502, "bad gateway")
        found = [i for (o, r, _), i in sorted(self.issues.items()) if o == owner and r == repo]
        for issue in found:
            if state == "all" or issue.state == state:
                yield issue

    def iter_org_repos(self, org):
        self.calls.append(("iter_org_repos", org))
        for repo in self.org_repos.get(org, []):
            if not (repo.archived or repo.disabled):
                yield repo

    def get_issue(self, owner, repo, number):
        self.calls.append(("get_issue", f"{owner}/{repo}", number))
        return self.issues.get((owner, repo, number))

    def create_issue(self, owner, repo, title, body=None, milestone=None):
        self._next_number += 1
        number = self._next_number
        self.calls.append(("create_issue", f"{owner}/{repo}", title, body, milestone))
        issue = Issue(
            id=number,
            number=number,
            title=title,
            html_url=f"https://github.com/{owner}/{repo}/issues/{number}",
            state="open",
            body=body,
        )
        self.issues[(owner, repo, number)] = issue
        return issue

    def _set(self, owner, repo, number, **update):
        issue = self.issues[(owner, repo, number)].model_copy(update=update)
        self.issues[(owner, repo, number)] = issue
        return issue

    def close_issue(self, owner, repo, number):
        self.calls.append(("close_issue", f"{owner}/{repo}", number))
        return self._set(owner, repo, number, state="closed")

    def reopen_issue(self, owner, repo, number):
        self.calls.append(("reopen_issue", f"{owner}/{repo}", number))
        return self._set(owner, repo, number, state="open")

    def set_issue_milestone(self, owner, repo, number, milestone):
        self.calls.append(("set_issue_milestone", f"{owner}/{repo}", number, milestone))

    def list_milestones(self, owner, repo):
        return list(self.milestones.get(f"{owner}/{repo}", []))

    def called(self, name):
        return [c for c in self.calls if c[0] == name]


class FakeTodoist:
    def __init__(self):
        self.projects: List[Project] = []
        self.tasks: Dict[str, Task] = {}
        self.sections: Dict[str, List[Section]] = {}
        self.completed: List[CompletedTask] = []
        self.delta_items: List[Task] = []
        self.next_token = "token-2"
        self.sync_tokens_seen = []
        self.completed_since_seen = []
        self.failing_create_urls = set()
        self.calls = []
        self._next_id = 0

    def _new_id(self, prefix):
        self._next_id += 1
        return f"{prefix}{self._next_id}"

    def add_task(self, task: Task) -> Task:
        self.tasks[task.id] = task
        return task

    def list_projects(self):
        return list(self.projects)

    def sync_delta(self, sync_token):
        self.sync_tokens_seen.append(sync_token)
        return SyncDelta(items=list(self.delta_items), sync_token=self.next_token, full_sync=sync_token == "*")

    def completed_since(self, since, limit=200):
        self.completed_since_seen.append(since)
        return list(self.completed)

    def fetch_issue_links(self, project_ids):
        links = {}
        for task in self.tasks.values():
            parsed = parse_issue_url(task.description)
            if task.project_id in project_ids and parsed.found:
                links[parsed.link.url] = LinkedTaskRef(task_id=task.id, project_id=task.project_id)
        return links

    def find_task_by_issue_url(self, issue_url) -> Optional[Task]:
        for task in self.tasks.values():
            parsed = parse_issue_url(task.description)
            if parsed.found and parsed.link.url == issue_url:
                return task
        return None

    def get_task(self, task_id):
        return self.tasks.get(task_id)

    def create_task(self, content, description, project_id, section_id=None):
        task = Task(
            id=self._new_id("t"),
            content=content,
            description=description,
            project_id=project_id,
            section_id=section_id,
        )
        self.calls.append(("create_task", content, description, project_id, section_id))
        return self.add_task(task)

    def update_task(self, task_id, *, content=None, description=None):
        self.calls.append(("update_task", task_id, content, description))
        update = {}
        if content is not None:
            update["content"] = content
        if description is not None:
            update["description"] = description
        if task_id in self.tasks:
            self.tasks[task_id] = self.tasks[task_id].model_copy(update=update)

    def close_task(self, task_id):
        self.calls.append(("close_task", task_id))
        self.tasks[task_id] = self.tasks[task_id].model_copy(update={"checked": True})

    def reopen_task(self, task_id):
        self.calls.append(("reopen_task", task_id))
        self.tasks[task_id] = self.tasks[task_id].model_copy(update={"checked": False})

    def move_task(self, task_id, section_id, project_id):
        self.calls.append(("move_task", task_id, section_id, project_id))
        self.tasks[task_id] = self.tasks[task_id].model_copy(update={"section_id": section_id})

    def list_sections(self, project_id):
        return list(self.sections.get(project_id, []))

    def create_section(self, project_id, name):
        section = Section(id=self._new_id("s"), project_id=project_id, name=name)
        self.calls.append(("create_section", project_id, name))
        self.sections.setdefault(project_id, []).append(section)
        return section

    def batch_create_sections(self, sections):
        self.calls.append(("batch_create_sections", list(sections)))
        return {(pid, name): self.create_section(pid, name).id for pid, name in sections}

    def batch_create_tasks(self, tasks, batch_size=50):
        self.calls.append(("batch_create_tasks", len(tasks), batch_size))
        result = BatchCreateResult()
        for draft in tasks:
            if draft.issue_url in self.failing_create_urls:
                result.failed += 1
                result.failed_tasks.append(draft)
                result.errors.append({"status": {"error": "boom"}, "issue_url": draft.issue_url})
                continue
            args = draft.args()
            task = self.create_task(args["content"], args["description"], args["project_id"], args.get("section_id"))
            result.success += 1
            result.created.append((draft, task.id))
        return result

    def called(self, name):
        return [c for c in self.calls if c[0] == name]
