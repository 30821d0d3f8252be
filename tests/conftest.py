from unittest.mock import MagicMock

import pytest

from splitledger.app import create_app
from splitledger.chat import ChatHub
from splitledger.config import Config


@pytest.fixture
def config():
    return Config({"SECRET_KEY": "test-secret", "LOG_LEVEL": "WARNING"})


@pytest.fixture
def db():
    database = MagicMock()
    database.fetch_one.return_value = None
    database.fetch_all.return_value = []
    database.transaction.return_value.__enter__.return_value = MagicMock()
    return database


@pytest.fixture
def tx(db):
    return db.transaction.return_value.__enter__.return_value


@pytest.fixture
def hub():
    return ChatHub(max_pending=5)


@pytest.fixture
def app(config, db, hub):
    app = create_app(config=config, database=db, hub=hub)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client):
    def _login(user_id, name="Alice"):
        with client.session_transaction() as sess:
            sess["user_id"] = user_id
            sess["user_name"] = name

    return _login
