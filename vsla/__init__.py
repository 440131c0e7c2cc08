import os

from flask import Flask
from vsla.extensions import db
from vsla.logger_config import setup_logger
from config import Config


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    setup_logger(app)

    # Initialize extensions
    db.init_app(app)

    # Register CLI commands
    from vsla.cli import vsla_cli
    app.cli.add_command(vsla_cli)

    uri = app.config['SQLALCHEMY_DATABASE_URI']
    if uri.startswith('sqlite:///'):
        os.makedirs(os.path.dirname(uri[len('sqlite:///'):]) or '.', exist_ok=True)

    # No migrations yet: tables are created on startup
    with app.app_context():
        from vsla import models  # noqa: F401
        db.create_all()

    return app
