#!/usr/bin/env python
"""
Simple script to run Alembic migrations programmatically.
This works cross-platform including Windows where the alembic command may not be in PATH.
"""
import sys

from alembic import command
from alembic.config import Config
from alembic.util.exc import CommandError
from sqlalchemy.exc import SQLAlchemyError


def main(revision="head"):
    """Upgrade the RDPForge database to ``revision``."""
    try:
        alembic_cfg = Config("alembic.ini")
        command.upgrade(alembic_cfg, revision)
        print("Database migrations completed successfully")
        return 0
    except (CommandError, SQLAlchemyError) as e:
        print(f"Migration failed: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main(*sys.argv[1:2]))
