"""End-to-end change tracking on SQLite.

Triggers are generated for the shop schema, installed into an in-memory
database, and exercised with plain SQL writes. Every assertion reads the
records back through the storage repositories.

Covers:
- Create, update and no-op update records
- Boolean and long-text encoding
- Association labels, including localized labels
- Cascade vs preserved deletes
- Composition-of-many records with root entity and key
- Skip flags (global, entity, element) and the acting user
- Skip flags derived from service, entity and deep composition opt-outs
- Disabled create, update and delete tracking
- Composite primary and foreign keys, multi-hop and computed identifiers
"""

import pytest
from sqlalchemy import text

from changetrail.deploy.sqlite import regenerate_triggers
from changetrail.models.config import TrackingConfig
from changetrail.models.schema import SchemaModel
from changetrail.skip import TransactionContext
from tests.conftest import change_logs, changes, install_shop, run, service_definitions

INSERT_ORDER = (
    "INSERT INTO shop_Orders (ID, title, status, isUrgent, customer_ID, country_code, note) "
    "VALUES (:id, :title, :status, :urgent, :customer, :country, :note)"
)
INSERT_ITEM = "INSERT INTO shop_OrderItems (ID, up__ID, title, quantity) VALUES (:id, :up, :title, :qty)"


def insert_order(engine, context=None, **overrides) -> None:
    params = dict(
        id="O1",
        title="First order",
        status="open",
        urgent=1,
        customer="c1",
        country="DE",
        note=None,
    )
    params.update(overrides)
    run(engine, INSERT_ORDER, params, context)


def by_attribute(rows) -> dict:
    return {r.attribute: r for r in rows}


@pytest.fixture
def tracked(engine, shop_schema):
    install_shop(engine, shop_schema)
    return engine


@pytest.fixture
def preserving(engine, shop_schema):
    install_shop(engine, shop_schema, preserve_deletes=True)
    return engine


# ------------------------------------------------------------------
# Create
# ------------------------------------------------------------------


class TestCreate:
    def test_one_record_per_non_null_attribute(self, tracked):
        insert_order(tracked)
        rows = changes(tracked, "shop.Orders", "O1")
        assert sorted(r.attribute for r in rows) == ["country", "customer", "isUrgent", "status"]
        status = by_attribute(rows)["status"]
        assert status.value_changed_from is None
        assert status.value_changed_to == "open"
        assert status.modification == "create"
        assert status.value_data_type == "cds.String"
        assert status.object_id == "First order"
        assert status.root_entity is None
        assert status.created_at is not None

    def test_single_header(self, tracked):
        insert_order(tracked)
        (header,) = change_logs(tracked, "shop.Orders", "O1")
        assert header.service_entity == "OrderService.Orders"
        assert {r.change_log_id for r in changes(tracked, "shop.Orders")} == {header.id}

    def test_boolean_false(self, tracked):
        insert_order(tracked, urgent=0)
        urgent = by_attribute(changes(tracked, "shop.Orders", "O1"))["isUrgent"]
        assert urgent.value_changed_to == "false"

    def test_boolean_true(self, tracked):
        insert_order(tracked)
        urgent = by_attribute(changes(tracked, "shop.Orders", "O1"))["isUrgent"]
        assert urgent.value_changed_to == "true"

    def test_object_id_falls_back_to_key(self, tracked):
        insert_order(tracked, title=None)
        assert {r.object_id for r in changes(tracked, "shop.Orders", "O1")} == {"O1"}

    def test_nothing_tracked_no_header(self, tracked):
        insert_order(tracked, status=None, urgent=None, customer=None, country=None)
        assert changes(tracked) == []
        assert change_logs(tracked) == []


# ------------------------------------------------------------------
# Labels
# ------------------------------------------------------------------


class TestLabels:
    def test_association_label(self, tracked):
        insert_order(tracked)
        customer = by_attribute(changes(tracked, "shop.Orders", "O1"))["customer"]
        assert customer.value_changed_to == "c1"
        assert customer.value_changed_to_label == "Alice Corp"
        assert customer.display_to == "Alice Corp"

    def test_localized_label_falls_back_to_base(self, tracked):
        insert_order(tracked)
        country = by_attribute(changes(tracked, "shop.Orders", "O1"))["country"]
        assert country.value_changed_to == "DE"
        assert country.value_changed_to_label == "Germany"

    def test_localized_label_uses_locale(self, tracked):
        insert_order(tracked, context=TransactionContext(locale="de"))
        country = by_attribute(changes(tracked, "shop.Orders", "O1"))["country"]
        assert country.value_changed_to_label == "Deutschland"

    def test_label_change(self, tracked):
        insert_order(tracked)
        run(tracked, "UPDATE shop_Orders SET customer_ID = 'c2' WHERE ID = 'O1'")
        (row,) = changes(tracked, "shop.Orders", "O1", modification="update")
        assert row.attribute == "customer"
        assert (row.value_changed_from, row.value_changed_to) == ("c1", "c2")
        assert (row.value_changed_from_label, row.value_changed_to_label) == ("Alice Corp", "Bob Ltd")


# ------------------------------------------------------------------
# Update
# ------------------------------------------------------------------


class TestUpdate:
    def test_same_value_records_nothing(self, tracked):
        insert_order(tracked, status="New")
        run(tracked, "UPDATE shop_Orders SET status = 'New' WHERE ID = 'O1'")
        assert changes(tracked, "shop.Orders", "O1", modification="update") == []
        assert len(change_logs(tracked, "shop.Orders", "O1")) == 1

    def test_changed_value(self, tracked):
        insert_order(tracked, status="New")
        run(tracked, "UPDATE shop_Orders SET status = 'Shipped' WHERE ID = 'O1'")
        (row,) = changes(tracked, "shop.Orders", "O1", modification="update")
        assert (row.attribute, row.value_changed_from, row.value_changed_to) == (
            "status",
            "New",
            "Shipped",
        )
        assert len(change_logs(tracked, "shop.Orders", "O1")) == 2

    def test_null_transitions(self, tracked):
        insert_order(tracked)
        run(tracked, "UPDATE shop_Orders SET status = NULL WHERE ID = 'O1'")
        run(tracked, "UPDATE shop_Orders SET status = NULL WHERE ID = 'O1'")
        run(tracked, "UPDATE shop_Orders SET status = 'again' WHERE ID = 'O1'")
        rows = changes(tracked, "shop.Orders", "O1", attribute="status", modification="update")
        assert [(r.value_changed_from, r.value_changed_to) for r in rows] == [
            ("open", None),
            (None, "again"),
        ]

    def test_untracked_column(self, tracked):
        insert_order(tracked)
        run(tracked, "UPDATE shop_Orders SET title = 'Renamed' WHERE ID = 'O1'")
        assert changes(tracked, modification="update") == []

    def test_boolean_flip(self, tracked):
        insert_order(tracked)
        run(tracked, "UPDATE shop_Orders SET isUrgent = 0 WHERE ID = 'O1'")
        (row,) = changes(tracked, "shop.Orders", "O1", modification="update")
        assert (row.value_changed_from, row.value_changed_to) == ("true", "false")

    def test_one_record_per_changed_attribute(self, tracked):
        insert_order(tracked)
        run(tracked, "UPDATE shop_Orders SET status = 'closed', amount = 12.5 WHERE ID = 'O1'")
        rows = changes(tracked, "shop.Orders", "O1", modification="update")
        assert sorted(r.attribute for r in rows) == ["amount", "status"]
        assert len({r.change_log_id for r in rows}) == 1


# ------------------------------------------------------------------
# Truncation
# ------------------------------------------------------------------


class TestTruncation:
    def test_limit_kept(self, tracked):
        insert_order(tracked, note="x" * 5000)
        note = by_attribute(changes(tracked, "shop.Orders", "O1"))["note"]
        assert note.value_changed_to == "x" * 5000

    def test_longer_truncated(self, tracked):
        insert_order(tracked, note="x" * 5001)
        note = by_attribute(changes(tracked, "shop.Orders", "O1"))["note"]
        assert note.value_changed_to == "x" * 4997 + "..."
        assert len(note.value_changed_to) == 5000


# ------------------------------------------------------------------
# Delete
# ------------------------------------------------------------------


class TestDelete:
    def test_cascade_removes_history(self, tracked):
        insert_order(tracked)
        insert_order(tracked, id="O2")
        run(tracked, "UPDATE shop_Orders SET status = 'closed' WHERE ID = 'O1'")
        run(tracked, "DELETE FROM shop_Orders WHERE ID = 'O1'")
        assert changes(tracked, "shop.Orders", "O1") == []
        assert change_logs(tracked, "shop.Orders", "O1") == []
        assert len(changes(tracked, "shop.Orders", "O2")) == 4

    def test_preserve_appends_delete_records(self, preserving):
        insert_order(preserving)
        run(preserving, "DELETE FROM shop_Orders WHERE ID = 'O1'")
        rows = changes(preserving, "shop.Orders", "O1", modification="delete")
        assert sorted(r.attribute for r in rows) == ["country", "customer", "isUrgent", "status"]
        status = by_attribute(rows)["status"]
        assert (status.value_changed_from, status.value_changed_to) == ("open", None)
        assert status.object_id == "First order"
        assert len(changes(preserving, "shop.Orders", "O1", modification="create")) == 4

    def test_preserve_skips_null_attributes(self, preserving):
        insert_order(preserving, status=None)
        run(preserving, "DELETE FROM shop_Orders WHERE ID = 'O1'")
        rows = changes(preserving, "shop.Orders", "O1", modification="delete")
        assert "status" not in {r.attribute for r in rows}


# ------------------------------------------------------------------
# Compositions
# ------------------------------------------------------------------


class TestComposition:
    def _items(self, engine) -> None:
        insert_order(engine)
        run(engine, INSERT_ITEM, {"id": "I1", "up": "O1", "title": "Widget", "qty": 2})
        run(engine, INSERT_ITEM, {"id": "I2", "up": "O1", "title": "Gadget", "qty": 1})

    def test_one_record_per_child(self, tracked):
        self._items(tracked)
        rows = changes(tracked, "shop.OrderItems", attribute="items")
        assert sorted(r.entity_key for r in rows) == ["I1", "I2"]
        for row in rows:
            assert row.root_entity == "shop.Orders"
            assert row.root_entity_key == "O1"
            assert row.root_object_id == "First order"
            assert row.value_data_type == "cds.Composition"
            assert row.modification == "create"
        assert sorted(r.value_changed_to for r in rows) == ["Gadget", "Widget"]

    def test_child_attributes_carry_root(self, tracked):
        self._items(tracked)
        rows = changes(tracked, "shop.OrderItems", "I1", attribute="quantity")
        (quantity,) = rows
        assert quantity.value_changed_to == "2"
        assert quantity.root_entity == "shop.Orders"
        assert quantity.root_entity_key == "O1"
        assert quantity.root_object_id == "First order"

    def test_history_by_root(self, tracked):
        self._items(tracked)
        rows = changes(tracked, root_entity="shop.Orders", root_entity_key="O1")
        assert len(rows) == 4

    def test_identifier_change(self, tracked):
        self._items(tracked)
        run(tracked, "UPDATE shop_OrderItems SET title = 'Gizmo' WHERE ID = 'I1'")
        run(tracked, "UPDATE shop_OrderItems SET quantity = 2 WHERE ID = 'I1'")
        (row,) = changes(tracked, "shop.OrderItems", "I1", modification="update")
        assert (row.attribute, row.value_changed_from, row.value_changed_to) == (
            "items",
            "Widget",
            "Gizmo",
        )

    def test_cascade_delete_child(self, tracked):
        self._items(tracked)
        run(tracked, "DELETE FROM shop_OrderItems WHERE ID = 'I1'")
        assert changes(tracked, "shop.OrderItems", "I1") == []
        assert len(changes(tracked, "shop.OrderItems", "I2")) == 2

    def test_preserved_child_delete(self, preserving):
        self._items(preserving)
        run(preserving, "DELETE FROM shop_OrderItems WHERE ID = 'I1'")
        rows = changes(preserving, "shop.OrderItems", "I1", modification="delete")
        assert sorted(r.attribute for r in rows) == ["items", "quantity"]
        items = by_attribute(rows)["items"]
        assert (items.value_changed_from, items.value_changed_to) == ("Widget", None)


# ------------------------------------------------------------------
# Skip flags and identity
# ------------------------------------------------------------------


class TestSkipFlags:
    def test_skip_all(self, tracked):
        insert_order(tracked, context=TransactionContext().skip_all())
        assert changes(tracked) == []
        assert change_logs(tracked) == []

    def test_skip_entity(self, tracked):
        insert_order(tracked, context=TransactionContext().skip("shop.Orders"))
        assert changes(tracked) == []

    def test_skip_other_entity(self, tracked):
        insert_order(tracked, context=TransactionContext().skip("shop.OrderItems"))
        assert len(changes(tracked, "shop.Orders")) == 4

    def test_skip_element(self, tracked):
        ctx = TransactionContext().skip_element("shop.Orders", "status")
        insert_order(tracked, context=ctx)
        rows = changes(tracked, "shop.Orders", "O1")
        assert sorted(r.attribute for r in rows) == ["country", "customer", "isUrgent"]

    def test_skip_element_only_change(self, tracked):
        insert_order(tracked)
        ctx = TransactionContext().skip_element("shop.Orders", "status")
        run(tracked, "UPDATE shop_Orders SET status = 'closed' WHERE ID = 'O1'", context=ctx)
        assert changes(tracked, modification="update") == []
        assert len(change_logs(tracked)) == 1

    def test_skip_composition(self, tracked):
        insert_order(tracked)
        ctx = TransactionContext().skip_element("shop.Orders", "items")
        run(tracked, INSERT_ITEM, {"id": "I1", "up": "O1", "title": "Widget", "qty": 2}, ctx)
        rows = changes(tracked, "shop.OrderItems", "I1")
        assert [r.attribute for r in rows] == ["quantity"]

    def test_skip_child_entity_hides_composition_record(self, tracked):
        insert_order(tracked)
        ctx = TransactionContext().skip("shop.OrderItems")
        run(tracked, INSERT_ITEM, {"id": "I1", "up": "O1", "title": "Widget", "qty": 2}, ctx)
        assert changes(tracked, "shop.OrderItems", "I1") == []
        assert len(change_logs(tracked)) == 1

    def test_skip_root_entity_keeps_child_records(self, tracked):
        insert_order(tracked)
        ctx = TransactionContext().skip("shop.Orders")
        run(tracked, INSERT_ITEM, {"id": "I1", "up": "O1", "title": "Widget", "qty": 2}, ctx)
        rows = changes(tracked, "shop.OrderItems", "I1")
        assert sorted(r.attribute for r in rows) == ["items", "quantity"]

    def test_flags_reset_after_write(self, tracked):
        insert_order(tracked, context=TransactionContext().skip_all())
        insert_order(tracked, id="O2")
        assert len(changes(tracked, "shop.Orders", "O2")) == 4

    def test_user(self, tracked):
        insert_order(tracked, context=TransactionContext(user="alice"))
        assert {r.created_by for r in changes(tracked)} == {"alice"}
        assert change_logs(tracked)[0].created_by == "alice"


# ------------------------------------------------------------------
# Flags derived from schema opt-outs
# ------------------------------------------------------------------

ITEM = {"id": "I1", "up": "O1", "title": "Widget", "qty": 2}
ORDER_WITH_ITEMS = {"ID": "O1", "items": [{"ID": "I1", "qty": 2}]}


def service_schema(**annotations) -> SchemaModel:
    definitions = service_definitions()
    for name, annotation in annotations.items():
        definitions[name.replace("__", ".")]["@changelog"] = annotation
    return SchemaModel.from_dict({"definitions": definitions})


class TestSchemaOptOuts:
    def _install(self, engine, schema) -> TransactionContext:
        install_shop(engine, schema)
        return TransactionContext.for_write(schema, "OrderService.Orders", ORDER_WITH_ITEMS)

    def test_service_opt_out(self, engine):
        ctx = self._install(engine, service_schema(OrderService=False))
        insert_order(engine, context=ctx)
        run(engine, INSERT_ITEM, ITEM, ctx)
        assert changes(engine) == []
        assert change_logs(engine) == []

    def test_entity_opt_out(self, engine):
        ctx = self._install(engine, service_schema(OrderService__Orders=False))
        insert_order(engine, context=ctx)
        assert changes(engine, "shop.Orders") == []
        insert_order(engine, id="O2")
        assert len(changes(engine, "shop.Orders", "O2")) == 4

    def test_renamed_element_opt_out(self, engine):
        ctx = self._install(engine, service_schema())
        insert_order(engine, context=ctx)
        rows = changes(engine, "shop.Orders", "O1")
        assert sorted(r.attribute for r in rows) == ["country", "customer", "status"]

    def test_deep_composition_element_opt_out(self, engine):
        ctx = self._install(engine, service_schema())
        insert_order(engine, context=ctx)
        run(engine, INSERT_ITEM, ITEM, ctx)
        rows = changes(engine, "shop.OrderItems", "I1")
        assert [r.attribute for r in rows] == ["items"]

    def test_deep_composition_entity_opt_out(self, engine):
        ctx = self._install(engine, service_schema(OrderService__OrderItems=None))
        insert_order(engine, context=ctx)
        run(engine, INSERT_ITEM, ITEM, ctx)
        assert changes(engine, "shop.OrderItems") == []
        assert len(changes(engine, "shop.Orders", "O1")) == 3


# ------------------------------------------------------------------
# Disabled operations
# ------------------------------------------------------------------


class TestDisabledOperations:
    def test_create_disabled(self, engine, shop_schema):
        install_shop(engine, shop_schema, disable_create_tracking=True)
        insert_order(engine)
        assert changes(engine) == []
        run(engine, "UPDATE shop_Orders SET status = 'closed' WHERE ID = 'O1'")
        (row,) = changes(engine, "shop.Orders", "O1")
        assert (row.modification, row.value_changed_to) == ("update", "closed")

    def test_update_disabled(self, engine, shop_schema):
        install_shop(engine, shop_schema, disable_update_tracking=True)
        insert_order(engine)
        run(engine, "UPDATE shop_Orders SET status = 'closed' WHERE ID = 'O1'")
        assert changes(engine, modification="update") == []
        assert len(changes(engine, "shop.Orders", "O1", modification="create")) == 4

    def test_delete_disabled_keeps_history(self, engine, shop_schema):
        install_shop(engine, shop_schema, disable_delete_tracking=True)
        insert_order(engine)
        run(engine, "DELETE FROM shop_Orders WHERE ID = 'O1'")
        rows = changes(engine, "shop.Orders", "O1")
        assert {r.modification for r in rows} == {"create"}
        assert len(rows) == 4


# ------------------------------------------------------------------
# Composite keys and identifiers
# ------------------------------------------------------------------

CATALOG_DEFINITIONS = {
    "db.Regions": {
        "elements": {
            "code": {"type": "cds.String", "key": True},
            "name": {"type": "cds.String"},
        },
    },
    "db.Customers": {
        "elements": {
            "ID": {"type": "cds.String", "key": True},
            "region": {"type": "cds.Association", "target": "db.Regions", "foreign_keys": ["code"]},
        },
    },
    "db.Products": {
        "elements": {
            "ID": {"type": "cds.String", "key": True},
            "variant": {"type": "cds.Integer", "key": True},
        },
    },
    "db.Orders": {
        "@changelog": ["customer.region.name", "title", "total"],
        "elements": {
            "ID": {"type": "cds.String", "key": True},
            "title": {"type": "cds.String"},
            "total": {"type": "cds.Decimal", "@Core.Computed": True},
            "status": {"type": "cds.String", "@changelog": True},
            "customer": {"type": "cds.Association", "target": "db.Customers", "foreign_keys": ["ID"]},
            "product": {
                "type": "cds.Association",
                "target": "db.Products",
                "foreign_keys": ["ID", "variant"],
                "@changelog": True,
            },
        },
    },
    "db.Slots": {
        "elements": {
            "code": {"type": "cds.String", "key": True},
            "pos": {"type": "cds.Integer", "key": True},
            "label": {"type": "cds.String", "@changelog": True},
        },
    },
}

CATALOG_DDL = [
    "CREATE TABLE db_Regions (code TEXT PRIMARY KEY, name TEXT)",
    "CREATE TABLE db_Customers (ID TEXT PRIMARY KEY, region_code TEXT)",
    "CREATE TABLE db_Products (ID TEXT, variant INTEGER, PRIMARY KEY (ID, variant))",
    "CREATE TABLE db_Orders (ID TEXT PRIMARY KEY, title TEXT, total NUMERIC, status TEXT, "
    "customer_ID TEXT, product_ID TEXT, product_variant INTEGER)",
    "CREATE TABLE db_Slots (code TEXT, pos INTEGER, label TEXT, PRIMARY KEY (code, pos))",
    "INSERT INTO db_Regions (code, name) VALUES ('EU', 'Europe')",
    "INSERT INTO db_Customers (ID, region_code) VALUES ('c1', 'EU')",
]


@pytest.fixture
def catalog(engine):
    schema = SchemaModel.from_dict({"definitions": CATALOG_DEFINITIONS})
    with engine.begin() as conn:
        for statement in CATALOG_DDL:
            conn.execute(text(statement))
    regenerate_triggers(engine, schema, TrackingConfig())
    return engine


class TestCompositeIdentity:
    def test_composite_primary_key(self, catalog):
        run(catalog, "INSERT INTO db_Slots (code, pos, label) VALUES ('x', 1, 'Top')")
        (row,) = changes(catalog, "db.Slots")
        assert row.entity_key == "x||1"
        assert row.object_id == "x||1"
        assert change_logs(catalog, "db.Slots", "x||1")

    def test_composite_foreign_key_value(self, catalog):
        run(
            catalog,
            "INSERT INTO db_Orders (ID, title, total, product_ID, product_variant) "
            "VALUES ('O1', 'T', 42, 'A', 7)",
        )
        (created,) = changes(catalog, "db.Orders", "O1", attribute="product")
        assert created.value_changed_to == "A 7"
        run(catalog, "UPDATE db_Orders SET product_variant = 8 WHERE ID = 'O1'")
        (updated,) = changes(catalog, "db.Orders", "O1", attribute="product", modification="update")
        assert (updated.value_changed_from, updated.value_changed_to) == ("A 7", "A 8")

    def test_identifier_keeps_declared_order(self, catalog):
        run(
            catalog,
            "INSERT INTO db_Orders (ID, title, total, status, customer_ID) "
            "VALUES ('O1', 'T', 42, 'new', 'c1')",
        )
        (row,) = changes(catalog, "db.Orders", "O1", attribute="status")
        assert row.object_id == "Europe, T, 42"
