import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy_utils import create_database, database_exists

from common.config import SQLAlchemyConfig

LOGGER = logging.getLogger(__name__)


def make_sqlalchemy_engine(config: SQLAlchemyConfig) -> Engine:
    if not database_exists(config.uri):
        LOGGER.info("Creating database %s", config.uri)
        create_database(config.uri)
    if config.uri.startswith("sqlite://"):
        # the watcher, the executor pool and the grpc workers all share the file
        return create_engine(
            config.uri,
            echo=config.echo,
            connect_args={
                "check_same_thread": False,
                "timeout": config.sqlite_busy_timeout.total_seconds(),
            },
        )
    return create_engine(
        config.uri,
        echo=config.echo,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_recycle=int(config.pool_recycle.total_seconds()),
        pool_pre_ping=True,
    )
