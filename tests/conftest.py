import datetime as dt
import os
import tempfile
from pathlib import Path

import pytest

_TMP = Path(tempfile.mkdtemp(prefix="clinica-tests-"))
os.environ["CLINICA_DATABASE_URL"] = f"sqlite:///{_TMP / 'test.sqlite'}"
os.environ["CLINICA_STORAGE_DIR"] = str(_TMP / "storage")

from sqlalchemy import select  # noqa: E402

from clinica import config  # noqa: E402
from clinica.db import db_session, reset_db  # noqa: E402
from clinica.models import Client, Service, User  # noqa: E402
from clinica.seed import seed_base  # noqa: E402

# un lunedì
MONDAY = dt.date(2026, 3, 2)


@pytest.fixture(autouse=True)
def fresh_db(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "STORAGE_DIR", tmp_path / "storage")
    monkeypatch.setattr(config, "INVOICE_COUNTER_ATOMIC", False)
    reset_db()
    yield


@pytest.fixture
def org_id():
    return seed_base()


def _user(username):
    with db_session() as s:
        return s.execute(select(User).where(User.username == username)).scalar_one()


@pytest.fixture
def rossi(org_id):
    return _user("mrossi")


@pytest.fixture
def bianchi(org_id):
    return _user("lbianchi")


@pytest.fixture
def service(org_id):
    with db_session() as s:
        return s.execute(select(Service).where(Service.name == "Controllo")).scalar_one()


@pytest.fixture
def client_id(org_id):
    with db_session() as s:
        return s.execute(select(Client.id).where(Client.name == "Giulia Verdi")).scalar_one()


@pytest.fixture
def new_client(org_id):
    def factory(name="Paziente Test", **fields):
        with db_session() as s:
            c = Client(organization_id=org_id, name=name, **fields)
            s.add(c)
            s.flush()
            return c.id

    return factory
