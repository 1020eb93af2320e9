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


import argparse
import os
import sys

BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

parser = argparse.ArgumentParser(
    description="Start the observation calculation service with custom arguments."
)
parser.add_argument("--host", type=str, default="0.0.0.0", help="Host to run the server on")
parser.add_argument("--port", type=int, default=5010, help="Port to run the server on")
parser.add_argument("--db", type=str, default="data/db/obscalc.db", help="Path to the database file")
parser.add_argument(
    "--log-level",
    type=str,
    default="INFO",
    choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    help="Set the logging level",
)
parser.add_argument(
    "--log-config",
    type=str,
    default=os.path.join(BACKEND_DIR, "logconfig.yaml"),
    help="Path to the logger configuration file",
)
parser.add_argument(
    "--workers", type=int, default=8, help="Number of concurrent calculation workers"
)
parser.add_argument(
    "--poll-interval",
    type=float,
    default=10.0,
    help="Seconds an idle worker waits before looking for claimable work again",
)
parser.add_argument(
    "--compute-timeout",
    type=float,
    default=120.0,
    help="Seconds a single calculation may run before it counts as a transient failure",
)
parser.add_argument(
    "--max-retries",
    type=int,
    default=5,
    help="Transient calculation failures tolerated before the result is marked failed",
)
parser.add_argument(
    "--retry-base-delay", type=float, default=60.0, help="First retry delay in seconds"
)
parser.add_argument(
    "--retry-max-delay", type=float, default=1920.0, help="Upper bound on the retry delay"
)
parser.add_argument("--telluric-max-retries", type=int, default=5)
parser.add_argument("--telluric-retry-base-delay", type=float, default=30.0)
parser.add_argument("--telluric-retry-max-delay", type=float, default=3600.0)
parser.add_argument(
    "--telluric-poll-interval",
    type=float,
    default=30.0,
    help="Seconds between telluric resolution polls",
)
parser.add_argument(
    "--telluric-batch-size",
    type=int,
    default=10,
    help="Telluric resolutions claimed per poll",
)
parser.add_argument(
    "--sweep-interval",
    type=float,
    default=5.0,
    help="Seconds between deferred program/call-for-proposals invalidation sweeps",
)
parser.add_argument(
    "--sweep-batch-size",
    type=int,
    default=200,
    help="Observations invalidated per transaction during a sweep",
)
parser.add_argument(
    "--itc-url",
    type=str,
    default="",
    help="Base URL of the exposure time calculator service (signal to noise is skipped if empty)",
)
parser.add_argument(
    "--telluric-catalog-url",
    type=str,
    default="",
    help="Base URL of the telluric star search service (telluric resolution is off if empty)",
)
parser.add_argument(
    "--remote-timeout",
    type=float,
    default=30.0,
    help="HTTP timeout in seconds for the calculator and catalog services",
)

# Only parse arguments if we're not in an alembic or test context
if os.environ.get("ALEMBIC_CONTEXT") or "pytest" in sys.modules:
    arguments = parser.parse_args([])
else:
    arguments = parser.parse_args()
