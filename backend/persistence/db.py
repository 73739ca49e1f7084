"""
This module manages the "db" object which is the gateway into the SQLAlchemy
ORM used by RDPForge.

Services take a session factory rather than a session; ``new_session`` is the
production factory and tests swap the engine underneath it with
``enter_test_mode``.
"""

import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from backend.config import config

# Database context - determines whether we're in production or test mode
IS_TEST_MODE = False
TEST_SESSION_LOCAL = None

PROD_ENGINE = None
PROD_SESSION_LOCAL = None


def build_database_url(db_config) -> str:
    """Build the SQLAlchemy URL for the ``database`` config section."""
    if db_config["user"] == "sqlite" or not db_config["host"]:
        return f"sqlite:///{db_config['name']}"
    return (
        f"postgresql://{db_config['user']}:{db_config['password']}"
        f"@{db_config['host']}:{db_config['port']}/{db_config['name']}"
    )


def _init_production_database():
    global PROD_ENGINE, PROD_SESSION_LOCAL  # pylint: disable=global-statement

    if PROD_ENGINE is not None:
        return

    url = os.getenv("DATABASE_URL") or build_database_url(config.get_config()["database"])

    connect_args = {}
    if url.startswith("sqlite"):
        # Monitoring tasks and executor threads share the engine
        connect_args = {"check_same_thread": False}

    PROD_ENGINE = create_engine(url, connect_args=connect_args, echo=False)
    PROD_SESSION_LOCAL = sessionmaker(autocommit=False, autoflush=False, bind=PROD_ENGINE)


# Get the base model class - we can use this to extend any models
Base = declarative_base()


def enter_test_mode(test_engine):
    """
    Enter test mode with the provided test engine.
    This prevents any production database access during tests.
    """
    global IS_TEST_MODE, TEST_SESSION_LOCAL  # pylint: disable=global-statement
    IS_TEST_MODE = True
    TEST_SESSION_LOCAL = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


def exit_test_mode():
    global IS_TEST_MODE, TEST_SESSION_LOCAL  # pylint: disable=global-statement
    IS_TEST_MODE = False
    TEST_SESSION_LOCAL = None


def get_session_local():
    """Get the appropriate session factory based on current mode."""
    if IS_TEST_MODE:
        if TEST_SESSION_LOCAL is None:
            raise RuntimeError("Test mode is active but no test session is configured")
        return TEST_SESSION_LOCAL
    _init_production_database()
    return PROD_SESSION_LOCAL


def new_session():
    """Open a session for the current mode; the caller closes it."""
    return get_session_local()()
