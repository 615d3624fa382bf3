"""Cache command - inspects and trims the environment cache."""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, Field

from checkgate.cache.store import CacheStore
from checkgate.core.log import logger

if TYPE_CHECKING:
    from checkgate.core.config import State


class CacheCommand(BaseModel):
    """List, prune or clear cached check environments."""

    action: Literal["list", "prune", "clear"] = Field(
        default="list",
        description="list entries, prune to max_entries, or clear all",
    )
    max_entries: int | None = Field(
        default=None,
        ge=0,
        description="Entries kept by prune (defaults to config.caching.max_entries)",
    )

    async def run_workflow(self, state: State) -> int:
        store = CacheStore(state.config.caching.root)

        if self.action == "list":
            for entry in store.entries():
                print(f"{entry.key}  {entry.tool}  "
                      f"last used {entry.last_used:%Y-%m-%d %H:%M}")
            return 0

        if self.action == "clear":
            count = store.clear()
            logger.info(f"Removed {count} cache entries")
            return 0

        keep = self.max_entries
        if keep is None:
            keep = state.config.caching.max_entries
        if keep is None:
            logger.error("prune needs --max_entries or cache.max_entries")
            return 2
        store.prune(keep)
        return 0
