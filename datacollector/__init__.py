from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.orm import sessionmaker
import os
import redis
import logging
import structlog

db = SQLAlchemy()

DEFAULTS = {
    'REDIS_URL': 'redis://localhost:6379/0',
    'COLLECTION_CONCURRENCY': 3,
    'PROCESSING_CONCURRENCY': 2,
    'INDEXING_CONCURRENCY': 2,
    'SEARCH_CONCURRENCY': 1,
    'DEFAULT_CONCURRENCY': 1,
    'JOB_TIMEOUT_SECONDS': 3600,
    'JOB_MAX_ATTEMPTS': 3,
    'JOB_BACKOFF_SECONDS': 5,
    'QUEUE_KEEP_COMPLETED': 100,
    'QUEUE_KEEP_FAILED': 50,
    'SHUTDOWN_GRACE_SECONDS': 30,
    'JOB_RETENTION_DAYS': 30,
    'EVENTS_MAX_PER_JOB': 1000,
    'LOG_LEVEL': 'INFO',
    'APP_ENV': 'development',
    'SERVICE_PROVIDERS': '',
}


def _from_env(key, default):
    value = os.environ.get(key)
    if value is None or value == '':
        return default
    if isinstance(default, int):
        return int(value)
    return value


def configure_logging(level):
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def create_app(overrides=None, redis_client=None):
    """
    Build the application and its job engine. The engine is reachable as
    app.extensions['datacollector'] (an Orchestrator).

    overrides are applied on top of environment configuration; redis_client
    replaces the connection built from REDIS_URL.
    """
    app = Flask(__name__)
    app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///datacollector.db')
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    for key, default in DEFAULTS.items():
        app.config[key] = _from_env(key, default)
    if overrides:
        app.config.update(overrides)

    configure_logging(app.config['LOG_LEVEL'])
    app.logger = structlog.get_logger('datacollector')

    db.init_app(app)
    app.redis = redis_client if redis_client is not None else redis.from_url(app.config['REDIS_URL'])

    from .events import StatusNotifier
    from .jobs import DEFAULT_JOB_CLASSES
    from .models import JobType
    from .orchestrator import Orchestrator
    from .processor import Processor
    from .queue import WorkQueue
    from .services import Config, load_providers
    from .state import StateStore

    with app.app_context():
        db.create_all()
        session_factory = sessionmaker(bind=db.engine, expire_on_commit=False)

    config = app.config
    notifier = StatusNotifier(app.redis, app.logger, max_events_per_job=int(config['EVENTS_MAX_PER_JOB']))
    state_store = StateStore(session_factory, notifier, app.logger)
    queue = WorkQueue(
        app.redis,
        app.logger,
        concurrency={job_type: config[f"{job_type.name}_CONCURRENCY"] for job_type in JobType},
        default_concurrency=int(config['DEFAULT_CONCURRENCY']),
        job_timeout=int(config['JOB_TIMEOUT_SECONDS']),
        max_attempts=int(config['JOB_MAX_ATTEMPTS']),
        backoff_seconds=int(config['JOB_BACKOFF_SECONDS']),
        keep_completed=int(config['QUEUE_KEEP_COMPLETED']),
        keep_failed=int(config['QUEUE_KEEP_FAILED']),
    )
    processor = Processor(
        state_store,
        notifier,
        queue,
        app.logger,
        Config(config),
        app.redis,
        job_timeout=float(config['JOB_TIMEOUT_SECONDS']),
        shutdown_grace=float(config['SHUTDOWN_GRACE_SECONDS']),
        worker_launcher=config.get('WORKER_LAUNCHER'),
    )
    for job_type, job_class in DEFAULT_JOB_CLASSES.items():
        processor.register_job_class(job_type, job_class)
    load_providers(processor.services, config['SERVICE_PROVIDERS'], app.logger)

    app.extensions['datacollector'] = Orchestrator(
        state_store, notifier, queue, processor, app.logger,
        retention_days=int(config['JOB_RETENTION_DAYS']),
    )
    return app
