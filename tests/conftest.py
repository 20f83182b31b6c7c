import pytest

from stash import create_app
from stash.config import TestConfig
from stash.extensions import db
from stash.services import get_services


@pytest.fixture
def app(tmp_path):
    app = create_app(TestConfig)
    app.config["BACKUP_DIR"] = str(tmp_path / "backups")
    with app.app_context():
        db.drop_all()
        db.create_all()
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return get_services(app)


@pytest.fixture
def backend(services):
    return services.backend
