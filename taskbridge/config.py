"""Application configuration"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Database (durable KV store lives here)
    database_url: str = "sqlite:///./taskbridge.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # External APIs
    github_token: str = ""
    github_api_base: str = "https://api.github.com"
    todoist_api_token: str = ""
    todoist_api_base: str = "https://api.todoist.com"

    # JSON object mapping Todoist parent project id -> GitHub org name.
    #
    # Example: '{"2203306141": "acme"}'
    org_mappings: str | None = None

    # Sync
    polling_interval_minutes: int = 15
    degraded_threshold_minutes: int = 30
    scheduler_enabled: bool = True
    # Re-read a small window before the last issue cursor to absorb clock skew.
    issue_cursor_overlap_minutes: int = 2
    # When true, the issue cursor is held back if any repo poll or issue reconciliation errored.
    strict_issue_cursor: bool = True

    # Rate limits (requests per minute)
    github_rate_limit: int = 60
    todoist_rate_limit: int = 300

    # Retry
    max_retries: int = 3
    base_retry_delay_seconds: float = 1.0
    max_retry_delay_seconds: float = 10.0

    # Pagination / batching
    per_page: int = 100
    batch_task_limit: int = 50
    max_tasks_per_sync: int = 30
    max_sections_per_sync: int = 10

    # Identity links + error tracking
    task_mapping_ttl_days: int = 365
    max_recent_errors: int = 10
    consecutive_failure_threshold: int = 3

    # Logging
    log_level: str = "INFO"

    # Auth (optional)
    # When enabled, all routes require "Authorization: Bearer <ADMIN_TOKEN>",
    # except for /health.
    auth_enabled: bool = False
    admin_token: str | None = None

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
