"""Shared test fixtures for ChangeTrail.

Provides an in-memory SQLite engine, session, repository fixtures, and a
small annotated "shop" schema with matching SQLite tables.
"""

import copy

import pytest
from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker

from changetrail.models.config import TrackingConfig
from changetrail.models.schema import SchemaModel
from changetrail.storage.engine import create_changetrail_engine, init_db
from changetrail.storage.sqlite import SqliteChangeLogRepository, SqliteChangeRepository

# ------------------------------------------------------------------
# Sample schema
# ------------------------------------------------------------------

SHOP_DEFINITIONS = {
    "shop.Orders": {
        "@changelog": ["title"],
        "elements": {
            "ID": {"type": "cds.String", "key": True},
            "title": {"type": "cds.String"},
            "status": {"type": "cds.String", "@changelog": True},
            "isUrgent": {"type": "cds.Boolean", "@changelog": True},
            "amount": {"type": "cds.Decimal", "@changelog": True},
            "note": {"type": "cds.LargeString", "@changelog": True},
            "customer": {
                "type": "cds.Association",
                "target": "shop.Customers",
                "foreign_keys": ["ID"],
                "@changelog": ["customer.name"],
            },
            "country": {
                "type": "cds.Association",
                "target": "shop.Countries",
                "foreign_keys": ["code"],
                "@changelog": ["country.name"],
            },
            "items": {
                "type": "cds.Composition",
                "target": "shop.OrderItems",
                "cardinality": "many",
                "@changelog": ["title"],
            },
        },
    },
    "shop.OrderItems": {
        "elements": {
            "ID": {"type": "cds.String", "key": True},
            "up_": {
                "type": "cds.Association",
                "target": "shop.Orders",
                "foreign_keys": ["ID"],
            },
            "title": {"type": "cds.String"},
            "quantity": {"type": "cds.Integer", "@changelog": True},
        },
    },
    "shop.Customers": {
        "elements": {
            "ID": {"type": "cds.String", "key": True},
            "name": {"type": "cds.String"},
            "email": {"type": "cds.String", "@PersonalData": True},
        },
    },
    "shop.Countries": {
        "texts": "shop.Countries.texts",
        "elements": {
            "code": {"type": "cds.String", "key": True},
            "name": {"type": "cds.String", "localized": True},
        },
    },
    "shop.Countries.texts": {
        "elements": {
            "locale": {"type": "cds.String", "key": True},
            "code": {"type": "cds.String", "key": True},
            "name": {"type": "cds.String"},
        },
    },
    "OrderService.Orders": {
        "projection_of": "shop.Orders",
        "elements": {
            "ID": {"type": "cds.String", "key": True},
            "title": {"type": "cds.String"},
            "status": {"type": "cds.String", "@changelog": True},
        },
    },
}

SHOP_DDL = [
    "CREATE TABLE shop_Orders (ID TEXT PRIMARY KEY, title TEXT, status TEXT, "
    "isUrgent BOOLEAN, amount NUMERIC, note TEXT, customer_ID TEXT, country_code TEXT)",
    "CREATE TABLE shop_OrderItems (ID TEXT PRIMARY KEY, up__ID TEXT, title TEXT, quantity INTEGER)",
    "CREATE TABLE shop_Customers (ID TEXT PRIMARY KEY, name TEXT, email TEXT)",
    "CREATE TABLE shop_Countries (code TEXT PRIMARY KEY, name TEXT)",
    "CREATE TABLE shop_Countries_texts (locale TEXT, code TEXT, name TEXT, PRIMARY KEY (locale, code))",
]

SHOP_SEED = [
    "INSERT INTO shop_Customers (ID, name) VALUES ('c1', 'Alice Corp'), ('c2', 'Bob Ltd')",
    "INSERT INTO shop_Countries (code, name) VALUES ('DE', 'Germany'), ('FR', 'France')",
    "INSERT INTO shop_Countries_texts (locale, code, name) VALUES ('de', 'DE', 'Deutschland')",
]


def shop_definitions() -> dict:
    """A fresh, mutable copy of the sample schema definitions."""
    return copy.deepcopy(SHOP_DEFINITIONS)


def service_definitions() -> dict:
    """The shop schema exposed through an ``OrderService`` with element opt-outs.

    ``OrderService.Orders.urgent`` renames ``isUrgent`` and
    ``OrderService.OrderItems.qty`` renames ``quantity``; both opt out.
    """
    definitions = shop_definitions()
    definitions["OrderService"] = {"kind": "service"}
    orders = definitions["OrderService.Orders"]
    orders["columns"] = {"urgent": "isUrgent"}
    orders["elements"]["urgent"] = {"type": "cds.Boolean", "@changelog": False}
    definitions["OrderService.OrderItems"] = {
        "projection_of": "shop.OrderItems",
        "columns": {"qty": "quantity"},
        "elements": {
            "ID": {"type": "cds.String", "key": True},
            "qty": {"type": "cds.Integer", "@changelog": False},
        },
    }
    return definitions


@pytest.fixture
def shop_schema() -> SchemaModel:
    return SchemaModel.from_dict({"definitions": shop_definitions()})


# ------------------------------------------------------------------
# Storage
# ------------------------------------------------------------------


@pytest.fixture
def engine():
    """In-memory SQLite engine with the storage tables created."""
    eng = create_changetrail_engine(":memory:")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    """Session with automatic rollback after each test."""
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    sess = SessionLocal()
    yield sess
    sess.rollback()
    sess.close()


@pytest.fixture
def change_repo(session: Session) -> SqliteChangeRepository:
    return SqliteChangeRepository(session)


@pytest.fixture
def change_log_repo(session: Session) -> SqliteChangeLogRepository:
    return SqliteChangeLogRepository(session)


# ------------------------------------------------------------------
# Shared test helpers (used by the SQLite tracking and deploy tests)
# ------------------------------------------------------------------


def create_shop_tables(engine) -> None:
    """Create and seed the tracked shop tables."""
    with engine.begin() as conn:
        for statement in SHOP_DDL + SHOP_SEED:
            conn.execute(text(statement))


def install_shop(engine, schema: SchemaModel, **config) -> list:
    """Create the shop tables and install their triggers."""
    from changetrail.deploy.sqlite import regenerate_triggers

    create_shop_tables(engine)
    return regenerate_triggers(engine, schema, TrackingConfig(**config))


def run(engine, sql: str, params: dict | None = None, context=None) -> None:
    """Execute one write in its own transaction, optionally under a TransactionContext."""
    with engine.begin() as conn:
        if context is None:
            conn.execute(text(sql), params or {})
        else:
            with context.applied(conn):
                conn.execute(text(sql), params or {})


def changes(engine, *args, **filters) -> list:
    """Change rows matching the filters, oldest first."""
    with Session(engine) as sess:
        return list(SqliteChangeRepository(sess).list_changes(*args, **filters))


def change_logs(engine, *args) -> list:
    with Session(engine) as sess:
        return list(SqliteChangeLogRepository(sess).list_change_logs(*args))


@pytest.fixture
def shop_entities(shop_schema) -> dict:
    """Analyzed shop entities keyed by name."""
    from changetrail.synthesis import TriggerSynthesizer

    return {e.name: e for e in TriggerSynthesizer(shop_schema).tracked_entities()}


def triggers_by_name(triggers) -> dict:
    return {t.name: t for t in triggers}
