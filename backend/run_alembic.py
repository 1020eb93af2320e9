#!/usr/bin/env python
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

"""Run alembic commands against the calculation store.

The database path comes from OBSCALC_DB (default data/db/obscalc.db), e.g.

    OBSCALC_DB=/tmp/obscalc.db python run_alembic.py upgrade head
"""
import os
import sys

# common.arguments must not parse the alembic command line
os.environ["ALEMBIC_CONTEXT"] = "1"

from alembic.config import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main(argv=sys.argv[1:], prog="run_alembic.py"))
