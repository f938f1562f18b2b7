"""
Shared test fixtures for the shop-floor core tests

Provides database setup and service fixtures wired to a private event
publisher and lock registry per test.
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shopfloor.core.locks import KeyedLocks
from shopfloor.db.base import Base
from shopfloor.services.bom_service import BOMResolver
from shopfloor.services.capacity_service import CapacityScheduler
from shopfloor.services.event_service import EventPublisher
from shopfloor.services.inventory_service import InventoryLedger
from shopfloor.services.mrp import MaterialRequirementsChecker
from shopfloor.services.work_order_service import WorkOrderEngine

from tests.factories import reset_sequences


# Create in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables(engine):
    """Create all tables for testing using SQLAlchemy metadata"""
    # Registers every model with Base
    import shopfloor.models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def drop_tables(engine):
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _reset_factory_sequences():
    reset_sequences()
    yield


@pytest.fixture
def db_session():
    """Create a fresh database session for each test"""
    create_tables(engine)

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        drop_tables(engine)


@pytest.fixture
def publisher():
    return EventPublisher(maxsize=1000)


@pytest.fixture
def locks():
    return KeyedLocks()


@pytest.fixture
def resolver(db_session):
    return BOMResolver(db_session)


@pytest.fixture
def ledger(db_session, publisher, locks):
    return InventoryLedger(db_session, publisher=publisher, locks=locks)


@pytest.fixture
def checker(db_session, resolver, ledger):
    return MaterialRequirementsChecker(db_session, resolver=resolver, ledger=ledger)


@pytest.fixture
def scheduler(db_session, locks):
    return CapacityScheduler(db_session, locks=locks)


@pytest.fixture
def wo_engine(db_session, publisher, locks):
    return WorkOrderEngine(db_session, publisher=publisher, locks=locks)
