# Copyright (c) 2025 Efstratios Goudelis
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.


"""Database migration utilities using Alembic."""

import os
import sys
from pathlib import Path

from alembic import command
from alembic.config import Config


def get_alembic_config(db_path: str) -> Config:
    """Get the Alembic configuration object for the given database file."""
    backend_dir = Path(__file__).parent.parent
    alembic_ini = backend_dir / "alembic.ini"

    alembic_cfg = Config(str(alembic_ini))
    alembic_cfg.set_main_option("script_location", str(backend_dir / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", f"sqlite+aiosqlite:///{db_path}")

    return alembic_cfg


def run_migrations(db_path: str):
    """Run all pending database migrations.

    Called on startup so the CalcRecord, telluric and sweep tables match the
    models before any worker claims work.
    """
    os.environ["ALEMBIC_CONTEXT"] = "1"

    try:
        alembic_cfg = get_alembic_config(db_path)
        command.upgrade(alembic_cfg, "head")
        return True
    except Exception as e:
        print(f"Error running migrations: {e}", file=sys.stderr)
        raise
    finally:
        if "ALEMBIC_CONTEXT" in os.environ:
            del os.environ["ALEMBIC_CONTEXT"]


def create_migration(db_path: str, message: str, autogenerate: bool = True):
    """Create a new migration revision.

    Args:
        db_path: Database file to compare the models against
        message: Description of the migration
        autogenerate: Whether to auto-generate migration from model changes
    """
    os.environ["ALEMBIC_CONTEXT"] = "1"

    try:
        alembic_cfg = get_alembic_config(db_path)
        command.revision(alembic_cfg, message=message, autogenerate=autogenerate)
        return True
    finally:
        if "ALEMBIC_CONTEXT" in os.environ:
            del os.environ["ALEMBIC_CONTEXT"]
