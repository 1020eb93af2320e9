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

from typing import Dict

from common.logger import logger

# Import all entity modules to register their handlers
from handlers.entities import obscalc, programs
from handlers.routing import DATA_REQUEST, DATA_SUBMISSION, dispatch_request, handler_registry
from obscalc.events import program_room

# hold a list of sessions
SESSIONS: Dict[str, Dict] = {}


def _register_all_handlers():
    """Register all entity handlers with the global registry."""
    obscalc.register_handlers(handler_registry)
    programs.register_handlers(handler_registry)


# Register all handlers at module load time
_register_all_handlers()


def register_socketio_handlers(sio):
    """Register Socket.IO event handlers."""

    @sio.on("connect")
    async def connect(sid, environ, auth=None):
        client_ip = environ.get("REMOTE_ADDR")
        logger.info(f"Client {sid} from {client_ip} connected")
        SESSIONS[sid] = environ

    @sio.on("disconnect")
    async def disconnect(sid, *args):
        environ = SESSIONS.pop(sid, {})
        logger.info(f"Client {sid} from {environ.get('REMOTE_ADDR')} disconnected")

    @sio.on("subscribe_program")
    async def subscribe_program(sid, program_id=None):
        """Start receiving calculation state changes for one program."""
        if not program_id:
            return {"success": False, "error": "program_id is required"}
        await sio.enter_room(sid, program_room(program_id))
        logger.info(f"Client {sid} follows calculations of program {program_id}")
        return {"success": True, "data": program_id}

    @sio.on("unsubscribe_program")
    async def unsubscribe_program(sid, program_id=None):
        if not program_id:
            return {"success": False, "error": "program_id is required"}
        await sio.leave_room(sid, program_room(program_id))
        return {"success": True, "data": program_id}

    @sio.on("data_request")
    async def handle_frontend_data_requests(sid, cmd, data=None):
        logger.info(f"Received event from: {sid}, with cmd: {cmd}")
        reply = await dispatch_request(
            sio, cmd, data, logger, sid, handler_registry, event_type=DATA_REQUEST
        )
        return reply

    @sio.on("data_submission")
    async def handle_frontend_data_submissions(sid, cmd, data=None):
        logger.info(f"Received event from: {sid}, with cmd: {cmd}, and data: {data}")
        reply = await dispatch_request(
            sio, cmd, data, logger, sid, handler_registry, event_type=DATA_SUBMISSION
        )
        return reply

    return SESSIONS
