"""
Configuration for the Event Planner sync SDK.

Uses pydantic-settings for environment variable loading (prefix PLANNER_).

Invariants:
    - All settings have defaults matching the stored schema and the mobile
      client's behaviour (50 documents per listener, 60 s budget cache)
    - Collection names are configurable so staging data can live beside
      production data
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class SyncSettings(BaseSettings):
    """SDK configuration loaded from environment."""

    # Collection names
    events_collection: str = Field(default="events", description="Event documents")
    task_events_collection: str = Field(default="taskEvents", description="Task lists by title")
    expense_events_collection: str = Field(
        default="expenseEvents", description="Expense lists by title"
    )
    groups_collection: str = Field(default="groups", description="Sharing groups")
    users_collection: str = Field(default="users", description="User directory")

    # Listener settings
    page_size: int = Field(default=50, gt=0, description="Documents per live subscription")

    # Derived cache
    budget_cache_ttl: float = Field(
        default=60.0, ge=0, description="Total budget validity window in seconds"
    )

    # Logging
    log_level: str = Field(default="INFO", description="DEBUG, INFO, WARNING, ERROR")
    log_format: str = Field(default="json", description="json or text")

    model_config = {"env_prefix": "PLANNER_"}

    @property
    def synced_collections(self) -> tuple[str, str, str]:
        """The three collections the event store mirrors."""
        return (
            self.events_collection,
            self.task_events_collection,
            self.expense_events_collection,
        )
