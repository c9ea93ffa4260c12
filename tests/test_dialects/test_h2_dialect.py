"""Tests for the H2 Java-bodied trigger generator.

Covers:
- One trigger per table with a TriggerAdapter body
- Skip flags read as H2 user variables
- Guards as Java conditionals
- Positional parameter binding of row values
"""

import pytest

from changetrail.dialects.h2 import H2TriggerGenerator, bind, java_string
from changetrail.models.config import TrackingConfig
from changetrail.models.tracked import ChangeOperation
from tests.conftest import triggers_by_name


@pytest.fixture
def generator() -> H2TriggerGenerator:
    return H2TriggerGenerator(TrackingConfig(db_kind="h2"))


@pytest.fixture
def orders_triggers(generator, shop_entities) -> dict:
    return triggers_by_name(generator.generate(shop_entities["shop.Orders"]))


class TestHelpers:
    def test_java_string(self):
        assert java_string('say "hi"\n') == '"say \\"hi\\"\\n"'

    def test_bind(self):
        sql, params = bind(
            "SELECT ?{0}, ?{1}, ?{0}",
            [("new", "ID"), ("java", "changeLogId")],
        )
        assert sql == "SELECT ?, ?, ?"
        assert params == ['newRow.getString("ID")', "changeLogId", 'newRow.getString("ID")']


class TestH2Triggers:
    def test_names(self, orders_triggers):
        assert set(orders_triggers) == {"SHOP_ORDERS_CT", "SHOP_ORDERITEMS_CT_COMP_ITEMS"}
        assert orders_triggers["SHOP_ORDERS_CT"].operations == tuple(ChangeOperation)

    def test_wrapper(self, orders_triggers):
        text = orders_triggers["SHOP_ORDERS_CT"].source_text
        assert text.startswith(
            "CREATE TRIGGER SHOP_ORDERS_CT AFTER INSERT, UPDATE, DELETE ON SHOP_ORDERS FOR EACH ROW AS $$\n"
            "org.h2.api.Trigger create() {\n"
            "    return new org.h2.tools.TriggerAdapter() {\n"
        )
        assert text.endswith("}\n$$;")
        assert "private boolean sessionFlag(" in text

    def test_skip_flags(self, orders_triggers):
        text = orders_triggers["SHOP_ORDERS_CT"].source_text
        assert 'if (sessionFlag(conn, "@ct_skip") || sessionFlag(conn, "@ct_skip_entity_shop_Orders")) {' in text
        assert '!sessionFlag(conn, "@ct_skip_element_shop_Orders_status")' in text

    def test_guards(self, orders_triggers):
        text = orders_triggers["SHOP_ORDERS_CT"].source_text
        assert 'newRow.getObject("STATUS") != null' in text
        assert '!java.util.Objects.equals(oldRow.getObject("STATUS"), newRow.getObject("STATUS"))' in text
        assert "if (oldRow == null) {" in text
        assert "} else if (oldRow != null && newRow != null) {" in text

    def test_statements_bind_row_values(self, orders_triggers):
        text = orders_triggers["SHOP_ORDERS_CT"].source_text
        assert "?{" not in text
        assert 'execute(conn, "INSERT INTO changetrail_change_log' in text
        assert 'newRow.getString("ID")' in text
        assert 'oldRow.getString("ID")' in text
        assert "String changeLogId = java.util.UUID.randomUUID().toString();" in text

    def test_session_values(self, orders_triggers):
        text = orders_triggers["SHOP_ORDERS_CT"].source_text
        assert "COALESCE(CAST(@ct_user AS VARCHAR), CURRENT_USER)" in text
        assert "CAST(RANDOM_UUID() AS VARCHAR)" in text

    def test_composition_lookup_guard(self, orders_triggers):
        text = orders_triggers["SHOP_ORDERITEMS_CT_COMP_ITEMS"].source_text
        assert "!java.util.Objects.equals(lookup(conn, " in text
        assert "?{" not in text

    def test_composition_guarded_by_child_flag(self, orders_triggers):
        text = orders_triggers["SHOP_ORDERITEMS_CT_COMP_ITEMS"].source_text
        assert 'sessionFlag(conn, "@ct_skip_entity_shop_OrderItems")' in text
        assert '"@ct_skip_entity_shop_Orders"' not in text
