"""Read-through projection of recently seen domain values."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CoordinatorState(BaseModel):
    """Most recently known fleet, quotes and campaigns.

    A convenience for UI surfaces only. The remote services remain the
    source of truth; this projection is never consulted by the cache.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    fleet: list[dict[str, Any]] = Field(default_factory=list)
    quotes: list[dict[str, Any]] = Field(default_factory=list)
    campaigns: list[dict[str, Any]] = Field(default_factory=list)

    def merge_campaign(self, update: dict[str, Any]) -> None:
        """Merge *update* into the campaign with the same ``id`` or append it."""
        campaign_id = update.get("id")
        for index, existing in enumerate(self.campaigns):
            if campaign_id is not None and existing.get("id") == campaign_id:
                merged = {**existing, **update}
                self.campaigns = [*self.campaigns[:index], merged, *self.campaigns[index + 1 :]]
                return
        self.campaigns = [*self.campaigns, dict(update)]
