"""File-backed backlog of work items with an atomic claim.

Items live in a single YAML file (``backlog.yaml`` under ``.review_gate/``
by default). Every read and every claim goes through :meth:`YamlBacklogStore._transaction`,
which takes an exclusive file lock and re-reads the file, so a claim is a
compare-and-set that holds across threads and processes.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Protocol, Sequence

from loguru import logger

from .io_utils import FileLock, _atomic_write_yaml, _load_yaml_with_error
from .models import ClaimOutcome, WorkItem

LOCK_SUFFIX = ".lock"


class BacklogError(RuntimeError):
    """The backlog file could not be read or has an invalid shape."""


class BacklogStore(Protocol):
    """What the work selection coordinator needs from a backlog."""

    def list_unclaimed(self) -> Sequence[WorkItem]: ...

    def claim(self, item_id: str, holder: str) -> ClaimOutcome: ...


class YamlBacklogStore:
    """Backlog stored as ``{version: 1, items: [...]}`` in a YAML file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock_path = path.with_name(path.name + LOCK_SUFFIX)

    def _load(self) -> list[WorkItem]:
        data, err = _load_yaml_with_error(self.path, {})
        if err:
            raise BacklogError(f"Unable to read backlog: {err}")
        raw = data.get("items") or []
        if not isinstance(raw, list):
            raise BacklogError(f"{self.path.name}: items must be a list")
        items: list[WorkItem] = []
        seen: set[str] = set()
        for i, entry in enumerate(raw):
            if not isinstance(entry, dict):
                raise BacklogError(f"{self.path.name}: items[{i}] must be a mapping")
            try:
                item = WorkItem.from_dict(entry)
            except ValueError as exc:
                raise BacklogError(f"{self.path.name}: items[{i}]: {exc}") from None
            if item.id in seen:
                raise BacklogError(f"{self.path.name}: duplicate item id {item.id!r}")
            seen.add(item.id)
            items.append(item)
        return items

    def _save(self, items: list[WorkItem]) -> None:
        _atomic_write_yaml(self.path, {"version": 1, "items": [item.to_dict() for item in items]})

    @contextmanager
    def _transaction(self) -> Iterator[list[WorkItem]]:
        # A fresh FileLock per transaction: one handle per holder.
        with FileLock(self._lock_path):
            yield self._load()

    def list_items(self) -> list[WorkItem]:
        with self._transaction() as items:
            return items

    def list_unclaimed(self) -> list[WorkItem]:
        with self._transaction() as items:
            return [item for item in items if not item.is_claimed]

    def get(self, item_id: str) -> WorkItem:
        with self._transaction() as items:
            for item in items:
                if item.id == item_id:
                    return item
        raise KeyError(item_id)

    def claim(self, item_id: str, holder: str) -> ClaimOutcome:
        """Assign ``item_id`` to ``holder`` unless someone already holds it.

        Raises:
            KeyError: If no item has ``item_id``.
            ValueError: If ``holder`` is empty.
        """
        if not holder or not holder.strip():
            raise ValueError("Claim holder must be a non-empty string")
        with self._transaction() as items:
            for item in items:
                if item.id != item_id:
                    continue
                if item.is_claimed:
                    logger.debug("Work item {} already claimed by {}", item_id, item.claimed_by)
                    return ClaimOutcome.ALREADY_CLAIMED
                item.claimed_by = holder
                self._save(items)
                logger.info("Work item {} claimed by {}", item_id, holder)
                return ClaimOutcome.CLAIMED
        raise KeyError(item_id)

    def release(self, item_id: str, holder: str) -> bool:
        """Drop ``holder``'s claim on ``item_id``. Returns False if ``holder`` does not hold it."""
        with self._transaction() as items:
            for item in items:
                if item.id != item_id:
                    continue
                if item.claimed_by != holder:
                    return False
                item.claimed_by = None
                self._save(items)
                logger.info("Work item {} released by {}", item_id, holder)
                return True
        raise KeyError(item_id)

    def add(self, item: WorkItem) -> None:
        """Append a new item. Items are created outside the coordinator; this is for seeding."""
        with self._transaction() as items:
            if any(existing.id == item.id for existing in items):
                raise ValueError(f"Work item {item.id} already exists")
            items.append(item)
            self._save(items)

    @staticmethod
    def from_items(path: Path, items: Sequence[dict[str, Any] | WorkItem]) -> "YamlBacklogStore":
        """Create (or overwrite) a backlog file holding ``items``."""
        store = YamlBacklogStore(path)
        parsed = [i if isinstance(i, WorkItem) else WorkItem.from_dict(i) for i in items]
        with FileLock(store._lock_path):
            store._save(parsed)
        return store
