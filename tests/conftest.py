import os
import tempfile

os.environ.setdefault("HIVEBUDGET_DATA_DIR", tempfile.mkdtemp(prefix="hivebudget-"))
os.environ["HIVEBUDGET_DATABASE_URL"] = "sqlite://"
os.environ["HIVEBUDGET_ENABLE_SCHEDULER"] = "0"
os.environ["HIVEBUDGET_SUPER_ADMIN_EMAILS"] = "root@hivebudget.app"
os.environ["HIVEBUDGET_TIMEZONE"] = "America/Sao_Paulo"

import pytest  # noqa: E402

import models  # noqa: E402,F401
from database import Base, build_engine, build_sessionmaker  # noqa: E402
from schemas import AccountIn, BudgetIn  # noqa: E402
from services import AccountService, BudgetService, UserService  # noqa: E402


@pytest.fixture
def engine():
    eng = build_engine("sqlite://")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    factory = build_sessionmaker(engine)
    with factory() as db:
        yield db


@pytest.fixture
def owner(session):
    return UserService(session).ensure_user("ana@example.com", "Ana Souza")


@pytest.fixture
def budget(session, owner):
    return BudgetService(session, owner.id).create(BudgetIn(name="casa  da ana"))


@pytest.fixture
def checking(session, owner, budget):
    return AccountService(session, owner.id).create(
        AccountIn(budget_id=budget.id, name="conta corrente", type="checking")
    )
