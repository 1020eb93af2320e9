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

"""
Command registry for the Socket.IO handlers.

Reads are registered as 'data_request' commands and writes as
'data_submission' commands; a command is only dispatched for the event type
it was registered under.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

DATA_REQUEST = "data_request"
DATA_SUBMISSION = "data_submission"


@dataclass(frozen=True)
class HandlerRoute:
    handler: Callable
    event_type: str


class HandlerRegistry:
    def __init__(self):
        self._routes: Dict[str, HandlerRoute] = {}

    def register(self, command: str, handler: Callable, event_type: str):
        """
        Register an async handler ``(sio, data, logger, sid) -> dict`` for a
        command. Registering the same command again replaces the handler.
        """
        if event_type not in (DATA_REQUEST, DATA_SUBMISSION):
            raise ValueError(f"Unknown event type for {command}: {event_type}")
        self._routes[command] = HandlerRoute(handler, event_type)

    def register_batch(self, routes: Dict[str, tuple]):
        for command, (handler, event_type) in routes.items():
            self.register(command, handler, event_type)

    def get_handler(self, command: str) -> Optional[HandlerRoute]:
        return self._routes.get(command)

    def get_commands_for_event_type(self, event_type: str) -> List[str]:
        return sorted(cmd for cmd, route in self._routes.items() if route.event_type == event_type)


# Global registry instance
handler_registry = HandlerRegistry()
