"""
Pytest fixtures for stock ledger tests.

Provides an in-memory database, catalog fixtures and small helpers for
seeding stock through the ledger.
"""

import pytest

from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import Location, Product, ProductVariant, StockLevel, Supplier
from stockledger.services import settings_service, stock_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'DEFAULT_COST_UPDATE_METHOD': 'none',
        'BATCH_EXPIRY_HORIZON_DAYS': 30,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def supplier(db_session):
    """Active supplier on net-30 terms."""
    supplier = Supplier(name="Acme Wholesale", status="active", payment_terms_days=30)
    db_session.add(supplier)
    db_session.commit()
    return supplier


@pytest.fixture(scope='function')
def cod_supplier(db_session):
    """Active supplier on cash-on-delivery terms."""
    supplier = Supplier(name="Cash Traders", status="active", payment_terms_days=0)
    db_session.add(supplier)
    db_session.commit()
    return supplier


@pytest.fixture(scope='function')
def product(db_session, supplier):
    product = Product(
        sku="WIDGET-001",
        name="Widget",
        status="active",
        cost_price_cents=500,
        selling_price_cents=1200,
        supplier_id=supplier.id,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def other_product(db_session, supplier):
    product = Product(
        sku="GADGET-001",
        name="Gadget",
        status="active",
        cost_price_cents=1000,
        selling_price_cents=2500,
        supplier_id=supplier.id,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def variant(db_session, product):
    variant = ProductVariant(product_id=product.id, sku="WIDGET-001-RED", name="Widget (red)")
    db_session.add(variant)
    db_session.commit()
    return variant


@pytest.fixture(scope='function')
def warehouse(db_session):
    location = Location(name="Main Warehouse", type="warehouse", is_primary=True)
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def store_front(db_session):
    location = Location(name="Store Front", type="store")
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def use_cost_method(db_session):
    """Switch the global cost policy for the duration of a test."""
    def _use(method: str):
        settings_service.update_inventory_settings(method)
    return _use


@pytest.fixture(scope='function')
def seed_stock(db_session):
    """Bring stock in through the ledger (purchase movement, no cost attribution)."""
    def _seed(product_id, quantity, *, location_id=None, variant_id=None, unit_cost_cents=None):
        return stock_service.post_movement(
            product_id=product_id,
            variant_id=variant_id,
            location_id=location_id,
            movement_type=stock_service.MOVEMENT_PURCHASE,
            delta=quantity,
            reason="Opening stock",
            unit_cost_cents=unit_cost_cents,
        )
    return _seed


@pytest.fixture(scope='function')
def assert_level_invariants(db_session):
    """0 <= reserved <= quantity and available == quantity - reserved, for every level."""
    def _check():
        for level in db_session.query(StockLevel).all():
            assert 0 <= level.reserved_quantity <= level.quantity, level
            assert level.available_quantity == level.quantity - level.reserved_quantity, level
    return _check
