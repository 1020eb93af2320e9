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
Program, observation and target handlers.

Every write goes through crud.upstream, which invalidates the affected
calculations in the same transaction.
"""

from typing import Any, Dict, Optional, Union

import crud.upstream as crud_upstream
from db import AsyncSessionLocal

Reply = Dict[str, Union[bool, dict, list, None, str]]


def _reply(result: dict) -> Reply:
    return {"success": result["success"], "data": result.get("data"), "error": result.get("error")}


def _missing(data: Optional[Dict], *keys) -> Optional[Reply]:
    absent = [key for key in keys if not data or data.get(key) is None]
    if absent:
        return {"success": False, "data": None, "error": f"Missing {', '.join(absent)}"}
    return None


async def submit_call_for_proposals(sio: Any, data: Optional[Dict], logger: Any, sid: str) -> Reply:
    async with AsyncSessionLocal() as dbsession:
        logger.debug(f"Adding call for proposals, data: {data}")
        return _reply(await crud_upstream.add_call_for_proposals(dbsession, data or {}))


async def edit_call_for_proposals(sio: Any, data: Optional[Dict], logger: Any, sid: str) -> Reply:
    error = _missing(data, "id")
    if error:
        return error
    async with AsyncSessionLocal() as dbsession:
        logger.debug(f"Editing call for proposals, data: {data}")
        return _reply(await crud_upstream.edit_call_for_proposals(dbsession, data["id"], data))


async def submit_program(sio: Any, data: Optional[Dict], logger: Any, sid: str) -> Reply:
    async with AsyncSessionLocal() as dbsession:
        logger.debug(f"Adding program, data: {data}")
        return _reply(await crud_upstream.add_program(dbsession, data or {}))


async def edit_program(sio: Any, data: Optional[Dict], logger: Any, sid: str) -> Reply:
    """
    Edit a program. A new proposal status or call for proposals invalidates
    all of its observations.

    Args:
        sio: Socket.IO server instance
        data: {"id": ..., plus the fields to change}
        logger: Logger instance
        sid: Socket.IO session ID
    """
    error = _missing(data, "id")
    if error:
        return error
    async with AsyncSessionLocal() as dbsession:
        logger.debug(f"Editing program, data: {data}")
        return _reply(await crud_upstream.edit_program(dbsession, data["id"], data))


async def submit_observation(sio: Any, data: Optional[Dict], logger: Any, sid: str) -> Reply:
    async with AsyncSessionLocal() as dbsession:
        logger.debug(f"Adding observation, data: {data}")
        return _reply(await crud_upstream.add_observation(dbsession, data or {}))


async def edit_observation(sio: Any, data: Optional[Dict], logger: Any, sid: str) -> Reply:
    error = _missing(data, "id")
    if error:
        return error
    async with AsyncSessionLocal() as dbsession:
        logger.debug(f"Editing observation, data: {data}")
        return _reply(await crud_upstream.edit_observation(dbsession, data["id"], data))


async def delete_observation(sio: Any, data: Optional[Dict], logger: Any, sid: str) -> Reply:
    error = _missing(data, "id")
    if error:
        return error
    async with AsyncSessionLocal() as dbsession:
        logger.debug(f"Deleting observation {data['id']}")
        return _reply(await crud_upstream.delete_observation(dbsession, data["id"]))


async def submit_target(sio: Any, data: Optional[Dict], logger: Any, sid: str) -> Reply:
    async with AsyncSessionLocal() as dbsession:
        logger.debug(f"Adding target, data: {data}")
        return _reply(await crud_upstream.add_target(dbsession, data or {}))


async def edit_target(sio: Any, data: Optional[Dict], logger: Any, sid: str) -> Reply:
    error = _missing(data, "id")
    if error:
        return error
    async with AsyncSessionLocal() as dbsession:
        logger.debug(f"Editing target, data: {data}")
        return _reply(await crud_upstream.edit_target(dbsession, data["id"], data))


async def set_asterism(sio: Any, data: Optional[Dict], logger: Any, sid: str) -> Reply:
    error = _missing(data, "observation_id", "target_ids")
    if error:
        return error
    async with AsyncSessionLocal() as dbsession:
        return _reply(
            await crud_upstream.set_asterism(dbsession, data["observation_id"], data["target_ids"])
        )


async def set_observing_mode(sio: Any, data: Optional[Dict], logger: Any, sid: str) -> Reply:
    error = _missing(data, "observation_id")
    if error:
        return error
    async with AsyncSessionLocal() as dbsession:
        return _reply(
            await crud_upstream.set_observing_mode(dbsession, data["observation_id"], data)
        )


async def clear_observing_mode(sio: Any, data: Optional[Dict], logger: Any, sid: str) -> Reply:
    error = _missing(data, "observation_id")
    if error:
        return error
    async with AsyncSessionLocal() as dbsession:
        return _reply(await crud_upstream.clear_observing_mode(dbsession, data["observation_id"]))


async def submit_configuration_request(
    sio: Any, data: Optional[Dict], logger: Any, sid: str
) -> Reply:
    async with AsyncSessionLocal() as dbsession:
        logger.debug(f"Saving configuration request, data: {data}")
        return _reply(await crud_upstream.upsert_configuration_request(dbsession, data or {}))


async def submit_dataset(sio: Any, data: Optional[Dict], logger: Any, sid: str) -> Reply:
    async with AsyncSessionLocal() as dbsession:
        return _reply(await crud_upstream.add_dataset(dbsession, data or {}))


async def edit_dataset_qa(sio: Any, data: Optional[Dict], logger: Any, sid: str) -> Reply:
    error = _missing(data, "id")
    if error:
        return error
    async with AsyncSessionLocal() as dbsession:
        return _reply(await crud_upstream.edit_dataset_qa(dbsession, data["id"], data.get("qa_state")))


def register_handlers(registry):
    """Register program, observation and target handlers with the command registry."""
    registry.register_batch(
        {
            "submit-cfp": (submit_call_for_proposals, "data_submission"),
            "edit-cfp": (edit_call_for_proposals, "data_submission"),
            "submit-program": (submit_program, "data_submission"),
            "edit-program": (edit_program, "data_submission"),
            "submit-observation": (submit_observation, "data_submission"),
            "edit-observation": (edit_observation, "data_submission"),
            "delete-observation": (delete_observation, "data_submission"),
            "submit-target": (submit_target, "data_submission"),
            "edit-target": (edit_target, "data_submission"),
            "set-asterism": (set_asterism, "data_submission"),
            "set-observing-mode": (set_observing_mode, "data_submission"),
            "clear-observing-mode": (clear_observing_mode, "data_submission"),
            "submit-configuration-request": (submit_configuration_request, "data_submission"),
            "submit-dataset": (submit_dataset, "data_submission"),
            "edit-dataset-qa": (edit_dataset_qa, "data_submission"),
        }
    )
