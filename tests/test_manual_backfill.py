import logging
import unittest
from unittest.mock import Mock

logging.disable(logging.CRITICAL)


def _hierarchy():
    from taskbridge.schemas import Project
    from taskbridge.services.hierarchy import build_group_hierarchy

    projects = [
        Project(id="100", name="Acme"),
        Project(id="200", name="widgets", parent_id="100"),
        Project(id="300", name="gadgets", parent_id="100"),
    ]
    return build_group_hierarchy(projects, {"100": "acme"})


def _no_mappings():
    from taskbridge.services.hierarchy import ConfigurationError

    raise ConfigurationError("No ORG_MAPPINGS configured")


class ManualBackfillTests(unittest.TestCase):
    def setUp(self):
        from fakes import FakeGitHub, FakeTodoist
        from taskbridge.services.caches import SyncContext

        self.github = FakeGitHub()
        self.todoist = FakeTodoist()
        self.links = Mock()
        self.links.store.return_value = True
        self.ctx = SyncContext.create(self.github, self.todoist)

    def _backfill(self, load_hierarchy=_hierarchy):
        from taskbridge.services.manual_backfill import ManualBackfill

        return ManualBackfill(self.ctx, self.links, load_hierarchy)

    def _add_issues(self, repo, numbers, org="acme", **kwargs):
        from fakes import make_issue

        for n in numbers:
            self.github.add(make_issue(n, f"Issue {n}", org=org, repo=repo, **kwargs))

    def test_projects_mode_creates_missing_tasks_and_links_them(self):
        from taskbridge.schemas import Task
        from taskbridge.services.manual_backfill import BackfillRequest

        self._add_issues("widgets", [1], milestone="v1")
        self._add_issues("widgets", [2])
        self._add_issues("gadgets", [3])
        self.todoist.add_task(
            Task(
                id="old",
                content="[#2] Issue 2",
                description="https://github.com/acme/widgets/issues/2",
                project_id="200",
            )
        )

        report = self._backfill().run(BackfillRequest(mode="projects"))

        self.assertEqual(report["summary"], {"total": 3, "created": 2, "skipped": 1, "failed": 0})
        widgets = report["repos"][0]
        self.assertEqual(widgets["repo"], "acme/widgets")
        self.assertEqual(widgets["project_id"], "200")
        self.assertEqual([i["status"] for i in widgets["issues"]], ["created", "skipped"])
        self.assertEqual(widgets["issues"][0]["section"], "v1")
        self.assertEqual(widgets["issues"][1]["reason"], "already_exists")
        created = self.todoist.called("create_task")
        self.assertEqual(
            [(c[1], c[3]) for c in created],
            [("[#1] Issue 1", "200"), ("[#3] Issue 3", "300")],
        )
        self.assertIsNotNone(created[0][4])
        self.assertEqual(self.links.store.call_count, 2)

    def test_limit_and_state_apply_per_repo(self):
        from taskbridge.services.manual_backfill import BackfillRequest

        self._add_issues("widgets", [1, 2, 3])
        self._add_issues("widgets", [4], state="closed")
        self._add_issues("gadgets", [5, 6])

        report = self._backfill().run(BackfillRequest(mode="projects", state="all", limit=2, dry_run=True))

        self.assertEqual([[i["issue"] for i in r["issues"]] for r in report["repos"]], [[1, 2], [5, 6]])

        closed = self._backfill().run(BackfillRequest(mode="projects", state="closed", dry_run=True))
        self.assertEqual([[i["issue"] for i in r["issues"]] for r in closed["repos"]], [[4], []])

    def test_dry_run_previews_without_writing(self):
        from taskbridge.services.manual_backfill import BackfillRequest

        self._add_issues("widgets", [1], milestone="v1")

        report = self._backfill().run(BackfillRequest(mode="projects", dry_run=True))

        self.assertTrue(report["dry_run"])
        self.assertEqual(report["repos"][0]["issues"][0]["status"], "would_create")
        self.assertEqual(report["repos"][0]["issues"][0]["milestone"], "v1")
        self.assertEqual(report["summary"]["created"], 1)
        self.assertEqual(self.todoist.called("create_task"), [])
        self.assertEqual(self.todoist.called("create_section"), [])
        self.links.store.assert_not_called()

    def test_single_repo_uses_mapped_project(self):
        from taskbridge.services.manual_backfill import BackfillRequest

        self._add_issues("gadgets", [3])

        report = self._backfill().run(BackfillRequest(mode="single-repo", owner="acme", repo="gadgets"))

        self.assertEqual(report["repos"][0]["project_id"], "300")
        self.assertEqual(report["summary"]["created"], 1)
        self.assertEqual(self.todoist.called("create_task")[0][3], "300")

    def test_unmapped_repo_can_be_previewed_but_not_created(self):
        from dataclasses import replace

        from taskbridge.schemas import Task
        from taskbridge.services.manual_backfill import BackfillRequest

        self._add_issues("tools", [1, 2], org="other")
        self.todoist.add_task(
            Task(id="x", content="[#2] Issue 2", description="https://github.com/other/tools/issues/2", project_id="9")
        )
        request = BackfillRequest(mode="single-repo", owner="other", repo="tools")

        preview = self._backfill(_no_mappings).run(replace(request, dry_run=True))
        self.assertEqual([i["status"] for i in preview["repos"][0]["issues"]], ["would_create", "skipped"])

        report = self._backfill().run(request)
        self.assertIsNone(report["repos"][0]["project_id"])
        first = report["repos"][0]["issues"][0]
        self.assertEqual(first["status"], "failed")
        self.assertEqual(first["error"], "No Todoist project is mapped to other/tools")
        self.assertEqual(report["summary"], {"total": 2, "created": 0, "skipped": 1, "failed": 1})
        self.assertEqual(self.todoist.called("create_task"), [])

    def test_org_mode_walks_active_repos(self):
        from taskbridge.schemas import Repository
        from taskbridge.services.manual_backfill import BackfillRequest

        self.github.org_repos["acme"] = [
            Repository(name="widgets", full_name="acme/widgets"),
            Repository(name="legacy", full_name="acme/legacy", archived=True),
            Repository(name="gadgets", full_name="acme/gadgets"),
        ]
        self._add_issues("widgets", [1])
        self._add_issues("legacy", [2])
        self._add_issues("gadgets", [3])

        report = self._backfill().run(BackfillRequest(mode="org", owner="acme"))

        self.assertEqual([r["repo"] for r in report["repos"]], ["acme/widgets", "acme/gadgets"])
        self.assertEqual(report["summary"]["created"], 2)

    def test_repo_failure_is_reported_and_others_continue(self):
        from taskbridge.services.manual_backfill import BackfillRequest

        self.github.failing_repos.add("acme/widgets")
        self._add_issues("gadgets", [3])

        report = self._backfill().run(BackfillRequest(mode="projects"))

        self.assertEqual(report["repos"][0]["error"], "GitHub API error: 502 - bad gateway")
        self.assertNotIn("error", report["repos"][1])
        self.assertEqual(report["summary"]["created"], 1)

    def test_create_mappings_seeds_link_store(self):
        from taskbridge.schemas import Task
        from taskbridge.services.manual_backfill import BackfillRequest

        for task_id, number, project in (("a", 1, "200"), ("b", 2, "300"), ("c", 3, "999")):
            self.todoist.add_task(
                Task(
                    id=task_id,
                    content=f"[#{number}] Issue",
                    description=f"https://github.com/acme/widgets/issues/{number}",
                    project_id=project,
                )
            )
        self.todoist.add_task(Task(id="n", content="Native", description="", project_id="200"))
        self.links.store.side_effect = [True, False]

        report = self._backfill().run(BackfillRequest(mode="create-mappings"))

        self.assertEqual(report["summary"], {"total": 2, "created": 1, "failed": 1})
        self.assertEqual(
            [(m["task_id"], m["status"]) for m in report["mappings"]],
            [("a", "created"), ("b", "failed")],
        )
        self.links.store.assert_any_call("a", "https://github.com/acme/widgets/issues/1")

    def test_create_mappings_dry_run_writes_nothing(self):
        from taskbridge.schemas import Task
        from taskbridge.services.manual_backfill import BackfillRequest

        self.todoist.add_task(
            Task(
                id="a",
                content="[#1] Issue",
                description="https://github.com/acme/widgets/issues/1",
                project_id="200",
            )
        )

        report = self._backfill().run(BackfillRequest(mode="create-mappings", dry_run=True))

        self.assertEqual(report["mappings"][0]["status"], "would_create")
        self.links.store.assert_not_called()


class BackfillRequestValidationTests(unittest.TestCase):
    def test_invalid_requests(self):
        from taskbridge.services.hierarchy import ConfigurationError
        from taskbridge.services.manual_backfill import BackfillRequest

        cases = [
            (dict(mode="everything"), ValueError, "mode must be"),
            (dict(mode="single-repo", owner="acme"), ValueError, "repo is required"),
            (dict(mode="org"), ValueError, "owner is required"),
            (dict(mode="org", owner="acme", state="merged"), ValueError, "state must be"),
            (dict(mode="org", owner="acme", limit=0), ValueError, "limit must be"),
            (dict(mode="projects"), ConfigurationError, "ORG_MAPPINGS"),
        ]
        for fields, error, message in cases:
            with self.subTest(**fields):
                with self.assertRaisesRegex(error, message):
                    BackfillRequest(**fields).validate(org_mappings_configured=False)

    def test_valid_requests(self):
        from taskbridge.services.manual_backfill import BackfillRequest

        BackfillRequest(mode="projects").validate(org_mappings_configured=True)
        BackfillRequest(mode="single-repo", owner="acme", repo="widgets", limit=5).validate(False)
        BackfillRequest(mode="org", owner="acme", state="all").validate(False)
