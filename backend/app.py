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

import asyncio
import os
import sys

sys.path.append(os.path.dirname(os.path.abspath(__file__)))
import uvicorn  # noqa: E402

from common.arguments import arguments  # noqa: E402
from common.logger import get_logger_config, logger  # noqa: E402
from db import AsyncSessionLocal  # noqa: E402
from handlers.api import register_obscalc_routes  # noqa: E402
from handlers.socket import register_socketio_handlers  # noqa: E402
from obscalc import __version__  # noqa: E402
from server.startup import app, init_db, sio, socket_app  # noqa: E402


def print_banner():
    """Print banner with version."""
    print(
        f"""
   ___  _            ____      _
  / _ \\| |__  ___   / ___|__ _| | ___
 | | | | '_ \\/ __| | |   / _` | |/ __|
 | |_| | |_) \\__ \\ | |__| (_| | | (__
  \\___/|_.__/|___/  \\____\\__,_|_|\\___|

                            v{__version__}
    """
    )


def main() -> None:
    print_banner()

    # Register other routes
    register_obscalc_routes(app, AsyncSessionLocal)
    register_socketio_handlers(sio)

    logger.info("Configuring database connection...")
    # Use asyncio.run to create/manage a temporary event loop (Python 3.12+ friendly)
    asyncio.run(init_db())

    logger.info(f"Starting observation calculation server with parameters {arguments}")
    try:
        uvicorn.run(
            socket_app,
            host=arguments.host,
            port=arguments.port,
            log_config=get_logger_config(arguments),
        )
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt in main")
    except Exception as e:  # pragma: no cover - startup errors
        logger.error(f"Error starting observation calculation server: {str(e)}")
        logger.exception(e)
        sys.exit(1)


if __name__ == "__main__":
    main()
