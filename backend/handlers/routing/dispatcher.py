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

"""Routes a Socket.IO command to the handler registered for it."""

from typing import Any, Dict, Optional, Union

from common.exceptions import StoreUnavailableError

Reply = Dict[str, Union[bool, None, dict, list, str]]


async def dispatch_request(
    sio: Any,
    cmd: str,
    data: Optional[Dict],
    logger: Any,
    sid: str,
    registry: Any,
    event_type: Optional[str] = None,
) -> Reply:
    """
    Look up ``cmd`` and await its handler. Unknown commands, commands sent
    under the wrong event type and handler errors all come back as
    ``{"success": False, "error": ...}``.
    """
    route = registry.get_handler(cmd)

    if not route:
        logger.error(f"Unknown command: {cmd}")
        return {"success": False, "error": f"Unknown command: {cmd}"}

    if event_type is not None and route.event_type != event_type:
        logger.error(f"Command '{cmd}' is a {route.event_type}, not a {event_type}")
        return {"success": False, "error": f"Command '{cmd}' is not a {event_type}"}

    try:
        result: Reply = await route.handler(sio, data, logger, sid)
        return result
    except StoreUnavailableError as e:
        logger.error(f"Store unavailable while handling '{cmd}': {e.message}")
        return {"success": False, "error": "Store unavailable"}
    except Exception as e:
        logger.error(f"Error handling command '{cmd}': {str(e)}")
        logger.exception(e)
        return {"success": False, "error": str(e)}
