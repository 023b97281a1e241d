import pytest
from sqlalchemy.orm import sessionmaker

from keybot.db import init_db, make_engine
from keybot.keys import add_keys
from keybot.settings import Settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    # a developer's .env must not leak into settings tests
    monkeypatch.delenv("AGE_BOUND", raising=False)
    monkeypatch.delenv("GIVEAWAY_DURATION", raising=False)
    monkeypatch.delenv("REQUIRED_CHAT", raising=False)


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{(tmp_path / 'keys.sqlite3').as_posix()}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def settings():
    return Settings({"age_bound": "5", "giveaway_duration": "3600"})


@pytest.fixture
def seed_keys(db):
    def _seed(*codes):
        add_keys(db, codes)
        return list(codes)
    return _seed
