"""Tests for the SQLite change and change-log repositories.

Covers:
- list_changes filters and insertion-order tie breaking
- count, save, delete_for
- Change-log header lookup and listing
"""

from datetime import datetime

import pytest

from changetrail.storage.schema import ChangeLogRow, ChangeRow

T0 = datetime(2024, 5, 1, 12, 0, 0)
T1 = datetime(2024, 5, 1, 12, 5, 0)


def change(id: str, attribute: str, created_at=T0, **overrides) -> ChangeRow:
    values = dict(
        id=id,
        attribute=attribute,
        entity="shop.Orders",
        entity_key="O1",
        modification="create",
        created_at=created_at,
    )
    values.update(overrides)
    return ChangeRow(**values)


@pytest.fixture
def populated(change_repo):
    # Saved out of id order; same-timestamp rows must keep insertion order
    change_repo.save(change("z", "status"))
    change_repo.save(change("a", "isUrgent"))
    change_repo.save(change("m", "status", created_at=T1, modification="update"))
    change_repo.save(change("k", "customer", entity_key="O2"))
    change_repo.save(
        change(
            "q",
            "quantity",
            entity="shop.OrderItems",
            entity_key="I1",
            root_entity="shop.Orders",
            root_entity_key="O1",
        )
    )
    return change_repo


class TestListChanges:
    def test_all_in_order(self, populated):
        assert [c.id for c in populated.list_changes()] == ["z", "a", "k", "q", "m"]

    def test_entity_and_key(self, populated):
        rows = populated.list_changes("shop.Orders", "O1")
        assert [c.id for c in rows] == ["z", "a", "m"]

    def test_attribute_and_modification(self, populated):
        assert [c.id for c in populated.list_changes(attribute="status")] == ["z", "m"]
        assert [c.id for c in populated.list_changes(modification="update")] == ["m"]

    def test_root(self, populated):
        rows = populated.list_changes(root_entity="shop.Orders", root_entity_key="O1")
        assert [c.id for c in rows] == ["q"]

    def test_limit(self, populated):
        assert len(populated.list_changes(limit=2)) == 2

    def test_no_match(self, populated):
        assert populated.list_changes("shop.Missing") == []


class TestCountAndDelete:
    def test_count(self, populated):
        assert populated.count() == 5
        assert populated.count("shop.Orders") == 4
        assert populated.count("shop.Orders", "O1") == 3

    def test_delete_for(self, populated):
        assert populated.delete_for("shop.Orders", "O1") == 3
        assert populated.count("shop.Orders") == 1
        assert populated.delete_for("shop.Orders", "O1") == 0


class TestChangeLogRepository:
    def test_get(self, session, change_log_repo):
        session.add(ChangeLogRow(id="log-1", entity="shop.Orders", entity_key="O1", created_at=T0))
        session.flush()
        assert change_log_repo.get("log-1").entity_key == "O1"
        assert change_log_repo.get("missing") is None

    def test_list(self, session, change_log_repo):
        session.add_all(
            [
                ChangeLogRow(id="b", entity="shop.Orders", entity_key="O1", created_at=T1),
                ChangeLogRow(id="a", entity="shop.Orders", entity_key="O2", created_at=T0),
                ChangeLogRow(id="c", entity="shop.OrderItems", entity_key="I1", created_at=T0),
            ]
        )
        session.flush()
        assert [h.id for h in change_log_repo.list_change_logs()] == ["a", "c", "b"]
        assert [h.id for h in change_log_repo.list_change_logs("shop.Orders")] == ["a", "b"]
        assert [h.id for h in change_log_repo.list_change_logs("shop.Orders", "O1")] == ["b"]
