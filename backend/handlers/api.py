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

"""HTTP routes for reading cached calculations and requesting invalidations."""

from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

import crud.obscalc as crud_obscalc
import crud.telluric as crud_telluric
from common.logger import logger
from obscalc import invalidation


class InvalidateRequest(BaseModel):
    changed_at: Optional[datetime] = None


def _data_or_503(reply: dict, action: str):
    if not reply["success"]:
        logger.error(f"Error {action}: {reply.get('error')}")
        raise HTTPException(status_code=503, detail=f"Store unavailable while {action}")
    return reply["data"]


def register_obscalc_routes(app: FastAPI, session_factory) -> None:
    """Register the calculation routes on the given FastAPI app."""

    @app.get("/api/obscalc/{observation_id}")
    async def get_obscalc_result(observation_id: str):
        async with session_factory() as session:
            data = _data_or_503(
                await crud_obscalc.fetch_obscalc_result(session, observation_id),
                f"reading {observation_id}",
            )
        if data is None:
            raise HTTPException(status_code=404, detail=f"No calculation for {observation_id}")
        return data

    @app.get("/api/programs/{program_id}/obscalc")
    async def get_program_obscalc(program_id: str):
        async with session_factory() as session:
            return _data_or_503(
                await crud_obscalc.fetch_program_obscalc(session, program_id),
                f"reading program {program_id}",
            )

    @app.get("/api/observations/{science_observation_id}/tellurics")
    async def get_telluric_resolutions(science_observation_id: str):
        async with session_factory() as session:
            return _data_or_503(
                await crud_telluric.fetch_telluric_resolutions_for_science(
                    session, science_observation_id
                ),
                f"reading tellurics of {science_observation_id}",
            )

    @app.post("/api/obscalc/{observation_id}/invalidate")
    async def invalidate_observation(observation_id: str, request: InvalidateRequest):
        async with session_factory() as session:
            outcome = _data_or_503(
                await invalidation.notify_changed(session, observation_id, request.changed_at),
                f"invalidating {observation_id}",
            )
            await session.commit()
        if not outcome["exists"]:
            raise HTTPException(status_code=404, detail=f"Unknown observation {observation_id}")
        return {"observation_id": observation_id, "changed": outcome["changed"]}

    async def _invalidate_owner(request: InvalidateRequest, **owner):
        async with session_factory() as session:
            sweep = _data_or_503(
                await invalidation.notify_changed_for_owner(
                    session, changed_at=request.changed_at, **owner
                ),
                "queueing invalidation sweep",
            )
            await session.commit()
        return {"sweep_id": sweep["id"]}

    @app.post("/api/programs/{program_id}/invalidate", status_code=202)
    async def invalidate_program(program_id: str, request: InvalidateRequest):
        return await _invalidate_owner(request, program_id=program_id)

    @app.post("/api/cfps/{cfp_id}/invalidate", status_code=202)
    async def invalidate_call_for_proposals(cfp_id: str, request: InvalidateRequest):
        return await _invalidate_owner(request, cfp_id=cfp_id)
