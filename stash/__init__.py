from flask import Flask

from stash.api import api_bp
from stash.commands import register_commands
from stash.config import Config
from stash.extensions import db, migrate
from stash.jobs.scheduler import start_scheduler
from stash.services import init_services


def create_app(config_object=Config, backend=None):
    app = Flask(__name__)
    app.config.from_object(config_object)
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    db.init_app(app)
    migrate.init_app(app, db)

    app.register_blueprint(api_bp)
    register_commands(app)

    with app.app_context():
        db.create_all()

    init_services(app, backend=backend)
    start_scheduler(app)
    return app
