"""
Taskdesk - Configuration and settings.

Settings holds the Appwrite connection details, collection mapping,
realtime polling and company access policy. Components take a Settings
instance explicitly; the lazy `settings` proxy is for the CLI and jobs.
"""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

# Tables the application knows about. Each maps to a collection with the
# same name unless overridden through APPWRITE_COLLECTIONS.
KNOWN_TABLES = (
    "profiles",
    "user_roles",
    "workspaces",
    "workspace_members",
    "projects",
    "tasks",
    "task_progress",
    "task_dependencies",
    "task_templates",
    "recurring_tasks",
    "approval_rules",
    "task_approvals",
    "activity_logs",
    "notifications",
    "notification_preferences",
    "documents",
    "company_transactions",
    "role_history",
    "governance_actions",
    "ideas",
    "idea_votes",
    "discussions",
    "user_onboarding",
)

# Early setups used singular collection names for some tables.
_LEGACY_COLLECTION_IDS = {
    ("company_transactions", "company_transaction"): "company_transactions",
    ("notification_preferences", "notification_preference"): "notification_preferences",
}


def normalize_collection_id(table: str, value: str) -> str:
    """Trim a configured collection id and map legacy singular names."""
    trimmed = value.strip()
    if not trimmed:
        return value
    return _LEGACY_COLLECTION_IDS.get((table, trimmed), trimmed)


def _split_emails(value: str) -> list[str]:
    return [item.strip().lower() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """
    Taskdesk application settings.

    Values come from the environment (or .env). Collection overrides are a
    JSON object, e.g. APPWRITE_COLLECTIONS='{"tasks": "tasks_v2"}'.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Appwrite
    appwrite_endpoint: str = ""
    appwrite_project_id: str = ""
    appwrite_database_id: str = ""
    appwrite_api_key: str | None = None  # Server context only (scheduler)
    appwrite_collections: dict[str, str] = {}
    appwrite_bucket_avatars: str = "avatars"
    appwrite_bucket_task_attachments: str = "task-attachments"

    # Realtime
    realtime_enabled: bool = True
    sync_poll_ms: int = 7000

    # Company access policy
    company_access_mode: Literal["open", "allowlist"] = "open"
    company_allowed_emails: str = ""
    company_admin_emails: str = ""
    company_manager_emails: str = ""

    # Application
    taskdesk_env: Literal["development", "staging", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @property
    def endpoint(self) -> str:
        return self.appwrite_endpoint.strip().rstrip("/")

    @property
    def endpoint_with_version(self) -> str:
        endpoint = self.endpoint
        if not endpoint:
            return ""
        return endpoint if endpoint.endswith("/v1") else f"{endpoint}/v1"

    @property
    def has_auth_config(self) -> bool:
        return bool(self.endpoint_with_version and self.appwrite_project_id.strip())

    @property
    def has_database_config(self) -> bool:
        return self.has_auth_config and bool(self.appwrite_database_id.strip())

    @property
    def collections(self) -> dict[str, str]:
        """Table name -> collection id, defaults merged with overrides."""
        mapping = {table: table for table in KNOWN_TABLES}
        for table, collection_id in self.appwrite_collections.items():
            mapping[table] = normalize_collection_id(table, collection_id)
        return {table: cid for table, cid in mapping.items() if cid}

    @property
    def buckets(self) -> dict[str, str]:
        return {
            "avatars": self.appwrite_bucket_avatars.strip() or "avatars",
            "task-attachments": self.appwrite_bucket_task_attachments.strip() or "task-attachments",
        }

    @property
    def admin_emails(self) -> list[str]:
        return _split_emails(self.company_admin_emails)

    @property
    def manager_emails(self) -> list[str]:
        return _split_emails(self.company_manager_emails)

    @property
    def allowed_emails(self) -> list[str]:
        return _split_emails(self.company_allowed_emails)

    @property
    def is_production(self) -> bool:
        return self.taskdesk_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


class _SettingsProxy:
    """Lazy proxy for settings to avoid loading .env at import time."""

    _instance: Settings | None = None

    def __getattr__(self, name: str):
        if self._instance is None:
            self._instance = get_settings()
        return getattr(self._instance, name)


settings = _SettingsProxy()
