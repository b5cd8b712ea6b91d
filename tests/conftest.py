"""Shared test fixtures for the chatshop test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, fake channels)
- client: Flask test client
- auth_headers: X-Internal-Token header for the internal API
- db_session: clean database per test (tables created/dropped)
- seed_data: a category, two products with stock, and one redemption code
- file_app: separate app on a file-backed SQLite database, for thread tests
"""

import pytest

from chatshop import create_app
from chatshop.extensions import db as _db
from chatshop.models.catalog import Category, Product, StockUnit
from chatshop.models.ledger import RedemptionCode

SCENARIO_CODE = "CODE123" + "0" * 25  # 32 characters
VOUCHER_HASH = "AbCdEfGhIjKlMnOpQrStUvWxYz012345678"  # 35 characters
VOUCHER_LINK = f"https://gift.truemoney.com/campaign/?v={VOUCHER_HASH}"
SLIP_URL = "https://cdn.example.test/attachments/slip-001.jpg"


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def auth_headers(app):
    return {"X-Internal-Token": app.config["INTERNAL_API_TOKEN"]}


def make_product(name, price, payloads, category=None):
    """Create a product with the given stock payloads, in pool order."""
    product = Product(name=name, price=price, category=category)
    _db.session.add(product)
    _db.session.flush()
    for payload in payloads:
        _db.session.add(StockUnit(product_id=product.id, payload=payload))
    _db.session.commit()
    return product.id


def pool(product_id):
    """Remaining payloads of a product, in pool order."""
    return list(
        _db.session.scalars(
            _db.select(StockUnit.payload)
            .where(StockUnit.product_id == product_id)
            .order_by(StockUnit.id)
        )
    )


@pytest.fixture
def seed_data(app, db_session):
    """Seed a small shop.

    Returns a dict of ids:
        p1: 50.00, stock ["A", "B", "C"]
        p2: 20.00, stock ["https://example.test/k/1", "https://example.test/k/2"]
        code: one valid redemption code
    """
    category = Category(name="Game Keys")
    _db.session.add(category)
    _db.session.flush()

    p1 = make_product("Steam Key", 50, ["A", "B", "C"], category)
    p2 = make_product(
        "Gift Link", 20, ["https://example.test/k/1", "https://example.test/k/2"], category
    )

    _db.session.add(RedemptionCode(code=SCENARIO_CODE))
    _db.session.commit()

    return {
        "category_id": category.id,
        "p1": p1,
        "p2": p2,
        "code": SCENARIO_CODE,
    }


@pytest.fixture
def file_app(tmp_path):
    """App bound to a SQLite file so several threads can share the database."""
    app = create_app(
        "testing",
        overrides={"SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'shop.db'}"},
    )
    with app.app_context():
        _db.create_all()
    yield app
    with app.app_context():
        _db.session.remove()
        _db.drop_all()
        _db.engine.dispose()
