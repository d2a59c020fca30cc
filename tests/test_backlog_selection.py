"""Test backlog persistence, ranking and the exclusive claim."""

from __future__ import annotations

import sys
import threading
from pathlib import Path

import pytest
import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from review_gate.backlog import BacklogError, YamlBacklogStore
from review_gate.models import ClaimOutcome, WorkItem
from review_gate.selection import WorkSelectionCoordinator, rank_work_items


def _store(tmp_path: Path, items: list[dict]) -> YamlBacklogStore:
    return YamlBacklogStore.from_items(tmp_path / ".review_gate" / "backlog.yaml", items)


def test_ranking_priority_then_dependents_then_id() -> None:
    items = [
        WorkItem("W4", priority=2),
        WorkItem("W2", priority=1, dependents=["A"]),
        WorkItem("W3", priority=1, dependents=["A", "B", "C"]),
        WorkItem("W1", priority=1, dependents=["X"]),
        WorkItem("W0", priority=0, claimed_by="someone"),
    ]
    assert [i.id for i in rank_work_items(items)] == ["W3", "W1", "W2", "W4"]


def test_claim_persists_holder(tmp_path: Path) -> None:
    store = _store(tmp_path, [{"id": "W1", "priority": 1}])
    assert store.claim("W1", "alice") is ClaimOutcome.CLAIMED
    assert store.claim("W1", "bob") is ClaimOutcome.ALREADY_CLAIMED

    raw = yaml.safe_load(store.path.read_text(encoding="utf-8"))
    assert raw["items"][0]["claimed_by"] == "alice"
    assert store.list_unclaimed() == []


def test_claim_unknown_id_raises(tmp_path: Path) -> None:
    store = _store(tmp_path, [{"id": "W1"}])
    with pytest.raises(KeyError):
        store.claim("W9", "alice")


def test_concurrent_claims_exactly_one_wins(tmp_path: Path) -> None:
    path = tmp_path / "backlog.yaml"
    YamlBacklogStore.from_items(path, [{"id": "W1", "priority": 1}])
    barrier = threading.Barrier(2, timeout=5)
    outcomes: dict[str, ClaimOutcome] = {}

    def _claim(holder: str) -> None:
        store = YamlBacklogStore(path)
        barrier.wait()
        outcomes[holder] = store.claim("W1", holder)

    threads = [threading.Thread(target=_claim, args=(h,)) for h in ("alice", "bob")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert sorted(o.value for o in outcomes.values()) == ["already_claimed", "claimed"]
    winner = next(h for h, o in outcomes.items() if o is ClaimOutcome.CLAIMED)
    assert YamlBacklogStore(path).get("W1").claimed_by == winner


def test_release(tmp_path: Path) -> None:
    store = _store(tmp_path, [{"id": "W1", "claimed_by": "alice"}])
    assert store.release("W1", "bob") is False
    assert store.release("W1", "alice") is True
    assert [i.id for i in store.list_unclaimed()] == ["W1"]


def test_corrupt_backlog_raises(tmp_path: Path) -> None:
    path = tmp_path / "backlog.yaml"
    path.write_text("items: [\n", encoding="utf-8")
    with pytest.raises(BacklogError):
        YamlBacklogStore(path).list_unclaimed()

    path.write_text("items:\n  - id: W1\n  - id: W1\n", encoding="utf-8")
    with pytest.raises(BacklogError, match="duplicate"):
        YamlBacklogStore(path).list_items()


def test_malformed_item_fields_raise_backlog_error(tmp_path: Path) -> None:
    path = tmp_path / "backlog.yaml"
    path.write_text("items:\n  - id: W1\n    dependents: W22\n", encoding="utf-8")
    with pytest.raises(BacklogError, match="dependents must be a list"):
        YamlBacklogStore(path).list_unclaimed()

    path.write_text("items:\n  - id: W1\n    metadata: core\n", encoding="utf-8")
    with pytest.raises(BacklogError, match="metadata must be a mapping"):
        YamlBacklogStore(path).list_unclaimed()


def test_missing_backlog_is_empty(tmp_path: Path) -> None:
    assert YamlBacklogStore(tmp_path / "none.yaml").list_unclaimed() == []


class TestCoordinator:
    def test_candidates_limit(self, tmp_path: Path) -> None:
        store = _store(tmp_path, [{"id": "W1", "priority": 3}, {"id": "W2", "priority": 1}, {"id": "W3"}])
        coordinator = WorkSelectionCoordinator(store, "alice")
        assert [i.id for i in coordinator.candidates(limit=2)] == ["W2", "W3"]

    def test_claim_next_takes_best(self, tmp_path: Path) -> None:
        store = _store(tmp_path, [{"id": "W1", "priority": 3}, {"id": "W2", "priority": 1}])
        item = WorkSelectionCoordinator(store, "alice").claim_next()
        assert item is not None and item.id == "W2"
        assert item.claimed_by == "alice"

    def test_conflict_advances_to_next_candidate(self) -> None:
        class _RacyStore:
            def __init__(self) -> None:
                self.attempts: list[str] = []

            def list_unclaimed(self) -> list[WorkItem]:
                return [WorkItem("W1", priority=1), WorkItem("W2", priority=2)]

            def claim(self, item_id: str, holder: str) -> ClaimOutcome:
                self.attempts.append(item_id)
                return ClaimOutcome.ALREADY_CLAIMED if item_id == "W1" else ClaimOutcome.CLAIMED

        store = _RacyStore()
        item = WorkSelectionCoordinator(store, "bob").claim_next()
        assert item is not None and item.id == "W2"
        assert store.attempts == ["W1", "W2"]

    def test_nothing_left(self, tmp_path: Path) -> None:
        store = _store(tmp_path, [{"id": "W1", "claimed_by": "alice"}])
        assert WorkSelectionCoordinator(store, "bob").claim_next() is None

    def test_holder_required(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            WorkSelectionCoordinator(_store(tmp_path, []), " ")

    def test_two_coordinators_split_the_backlog(self, tmp_path: Path) -> None:
        path = tmp_path / "backlog.yaml"
        YamlBacklogStore.from_items(path, [{"id": "W1", "priority": 1}, {"id": "W2", "priority": 2}])
        barrier = threading.Barrier(2, timeout=5)
        claimed: dict[str, str] = {}

        def _run(holder: str) -> None:
            coordinator = WorkSelectionCoordinator(YamlBacklogStore(path), holder)
            barrier.wait()
            item = coordinator.claim_next()
            if item is not None:
                claimed[holder] = item.id

        threads = [threading.Thread(target=_run, args=(h,)) for h in ("alice", "bob")]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert sorted(claimed.values()) == ["W1", "W2"]
