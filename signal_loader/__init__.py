# signal_loader/__init__.py
from flask import Flask
from flask_cors import CORS
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from apscheduler.schedulers.background import BackgroundScheduler
from config import Config

db = SQLAlchemy()
migrate = Migrate()
# Initialize scheduler as None first
scheduler = None


def create_app(config_class=Config, source_manager=None, clock=None):
    """
    Build the loader service.

    Args:
        config_class: Config object (TestConfig in the test suite)
        source_manager: Source database access; a DatabaseManager reading
            SOURCE_<REF>_* variables when None
        clock: Callable returning naive UTC now; utcnow when None
    """
    app = Flask(__name__)
    CORS(app)  # Enable CORS
    app.config.from_object(config_class)

    from signal_loader.jobs.utils.logging_config import setup_script_logging
    setup_script_logging('signal_loader', app.config.get('LOG_LEVEL') or 'INFO', app.config.get('LOG_FOLDER'))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    from signal_loader import models  # noqa: F401
    from signal_loader.jobs.common.config_provider import ConfigPlanProvider, Tunables
    from signal_loader.jobs.common.database_manager import DatabaseManager
    from signal_loader.jobs.common.replica import resolve_holder_identity
    from signal_loader.jobs.common.time_window import utcnow
    from signal_loader.jobs.scheduler import LoaderScheduler

    if source_manager is None:
        source_manager = DatabaseManager(env_file=app.config.get('SOURCE_ENV_FILE'))

    holder = resolve_holder_identity(app.config.get('LOADER_REPLICA_NAME'))
    loader_scheduler = LoaderScheduler(
        app,
        source_manager,
        holder,
        tunables_provider=ConfigPlanProvider(Tunables.from_config(app.config)),
        clock=clock or utcnow,
    )
    app.extensions['loader_scheduler'] = loader_scheduler

    # Register blueprints
    from signal_loader.api import bp as api_bp
    app.register_blueprint(api_bp, url_prefix='/api')

    from signal_loader.cli import loader_cli
    app.cli.add_command(loader_cli)

    # Initialize scheduler only if it's not running
    if app.config.get('SCHEDULER_ENABLED'):
        global scheduler
        if scheduler is None or not scheduler.running:
            scheduler = BackgroundScheduler()
            scheduler.configure(misfire_grace_time=None)
            scheduler.start()
        loader_scheduler.start(scheduler)

    return app


def get_loader_scheduler(app=None):
    from flask import current_app
    return (app or current_app).extensions['loader_scheduler']
