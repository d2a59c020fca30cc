"""Rank unclaimed work items and claim the best one."""

from __future__ import annotations

from typing import Iterable, Optional

from loguru import logger

from .backlog import BacklogStore
from .models import ClaimOutcome, WorkItem


def _rank_key(item: WorkItem) -> tuple[int, int, str]:
    return (item.priority, -len(item.dependents), item.id)


def rank_work_items(items: Iterable[WorkItem]) -> list[WorkItem]:
    """Return unclaimed items, best first.

    Lower priority numbers first; ties go to the item that unblocks more
    dependents, then to the lexically smaller id.
    """
    return sorted((item for item in items if not item.is_claimed), key=_rank_key)


class WorkSelectionCoordinator:
    """Pick and claim work on behalf of one holder.

    Holds no lock of its own; exclusivity comes from the store's claim.
    """

    def __init__(self, store: BacklogStore, holder: str) -> None:
        if not holder or not holder.strip():
            raise ValueError("holder must be a non-empty string")
        self.store = store
        self.holder = holder

    def candidates(self, limit: Optional[int] = None) -> list[WorkItem]:
        ranked = rank_work_items(self.store.list_unclaimed())
        return ranked if limit is None else ranked[: max(0, limit)]

    def claim_next(self) -> Optional[WorkItem]:
        """Claim the best available item.

        A conflict means another holder got there first; move on to the
        next candidate in the same ranking.

        Returns:
            The claimed item, or None if every candidate was taken.
        """
        for item in self.candidates():
            try:
                outcome = self.store.claim(item.id, self.holder)
            except KeyError:
                logger.debug("Work item {} vanished before it could be claimed", item.id)
                continue
            if outcome == ClaimOutcome.CLAIMED:
                item.claimed_by = self.holder
                return item
            logger.debug("Claim conflict on {} for {}; trying next candidate", item.id, self.holder)
        logger.info("No unclaimed work available for {}", self.holder)
        return None
