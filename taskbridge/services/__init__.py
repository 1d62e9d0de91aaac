"""Services"""

from taskbridge.services.github_client import GitHubClient
from taskbridge.services.sync_service import SyncService
from taskbridge.services.todoist_client import TodoistClient

__all__ = ["GitHubClient", "TodoistClient", "SyncService"]
