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

"""Calculation result handlers."""

from datetime import datetime
from typing import Any, Dict, Optional, Union

import crud.obscalc as crud_obscalc
import crud.telluric as crud_telluric
from db import AsyncSessionLocal
from obscalc import invalidation


def _changed_at(data: Dict) -> Optional[datetime]:
    value = data.get("changed_at")
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


async def get_obscalc_result(
    sio: Any, data: Optional[Dict], logger: Any, sid: str
) -> Dict[str, Union[bool, dict, None, str]]:
    """
    Get the cached calculation of one observation, with a ``stale`` flag.

    Args:
        sio: Socket.IO server instance
        data: {"observation_id": ...}
        logger: Logger instance
        sid: Socket.IO session ID

    Returns:
        Dictionary with success status and the record (None if unknown)
    """
    if not data or not data.get("observation_id"):
        return {"success": False, "data": None, "error": "observation_id is required"}

    async with AsyncSessionLocal() as dbsession:
        logger.debug(f"Getting calculation for {data['observation_id']}")
        reply = await crud_obscalc.fetch_obscalc_result(dbsession, data["observation_id"])
        return {"success": reply["success"], "data": reply.get("data"), "error": reply.get("error")}


async def get_program_obscalc(
    sio: Any, data: Optional[Dict], logger: Any, sid: str
) -> Dict[str, Union[bool, list, None, str]]:
    """
    Get the cached calculations of every observation in a program.
    """
    if not data or not data.get("program_id"):
        return {"success": False, "data": [], "error": "program_id is required"}

    async with AsyncSessionLocal() as dbsession:
        reply = await crud_obscalc.fetch_program_obscalc(dbsession, data["program_id"])
        return {
            "success": reply["success"],
            "data": reply.get("data", []),
            "error": reply.get("error"),
        }


async def get_telluric_resolutions(
    sio: Any, data: Optional[Dict], logger: Any, sid: str
) -> Dict[str, Union[bool, list, None, str]]:
    if not data or not data.get("science_observation_id"):
        return {"success": False, "data": [], "error": "science_observation_id is required"}

    async with AsyncSessionLocal() as dbsession:
        reply = await crud_telluric.fetch_telluric_resolutions_for_science(
            dbsession, data["science_observation_id"]
        )
        return {
            "success": reply["success"],
            "data": reply.get("data", []),
            "error": reply.get("error"),
        }


async def invalidate_observation(
    sio: Any, data: Optional[Dict], logger: Any, sid: str
) -> Dict[str, Union[bool, dict, None, str]]:
    """
    Mark an observation's calculation out of date.

    Args:
        sio: Socket.IO server instance
        data: {"observation_id": ..., "changed_at": optional ISO timestamp}
        logger: Logger instance
        sid: Socket.IO session ID

    Returns:
        Dictionary with success status and the invalidation outcome
    """
    if not data or not data.get("observation_id"):
        return {"success": False, "data": None, "error": "observation_id is required"}

    async with AsyncSessionLocal() as dbsession:
        logger.debug(f"Invalidating calculation for {data['observation_id']}")
        reply = await invalidation.notify_changed(
            dbsession, data["observation_id"], _changed_at(data)
        )
        if not reply["success"]:
            return {"success": False, "data": None, "error": reply["error"]}
        await dbsession.commit()

        outcome = reply["data"]
        return {
            "success": True,
            "data": {
                "observation_id": outcome["observation_id"],
                "exists": outcome["exists"],
                "changed": outcome["changed"],
            },
            "error": None,
        }


async def invalidate_owner(
    sio: Any, data: Optional[Dict], logger: Any, sid: str
) -> Dict[str, Union[bool, dict, None, str]]:
    """
    Invalidate every observation of a program or of a call for proposals.
    Exactly one of ``program_id`` and ``cfp_id`` must be given.
    """
    data = data or {}
    program_id = data.get("program_id")
    cfp_id = data.get("cfp_id")
    if (program_id is None) == (cfp_id is None):
        return {"success": False, "data": None, "error": "Give exactly one of program_id, cfp_id"}

    async with AsyncSessionLocal() as dbsession:
        reply = await invalidation.notify_changed_for_owner(
            dbsession, program_id=program_id, cfp_id=cfp_id, changed_at=_changed_at(data)
        )
        if not reply["success"]:
            return {"success": False, "data": None, "error": reply["error"]}
        await dbsession.commit()
        return {"success": True, "data": {"sweep_id": reply["data"]["id"]}, "error": None}


def register_handlers(registry):
    """Register calculation handlers with the command registry."""
    registry.register_batch(
        {
            "get-obscalc-result": (get_obscalc_result, "data_request"),
            "get-program-obscalc": (get_program_obscalc, "data_request"),
            "get-telluric-resolutions": (get_telluric_resolutions, "data_request"),
            "invalidate-observation": (invalidate_observation, "data_submission"),
            "invalidate-owner": (invalidate_owner, "data_submission"),
        }
    )
