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
Write paths for the data that calculations depend on.

Every function that changes something a calculation reads also tells the
invalidation tracker, in the same transaction, which observations are
affected. Functions commit unless called with ``commit=False``.
"""

import traceback
from typing import List, Optional

from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

import crud.telluric as crud_telluric
from common.logger import logger
from common.utils import serialize_object, utcnow
from crud.obscalc import stage_transition
from db.models import (
    AsterismTargets,
    CallsForProposals,
    ConfigurationRequests,
    Datasets,
    ObsCalc,
    Observations,
    ObservingModes,
    Programs,
    Targets,
)
from obscalc.constants import CALIBRATION_ROLE_TELLURIC, EDIT_DELETED
from obscalc.invalidation import (
    notify_changed,
    notify_changed_for_owner,
    notify_changed_many,
    qa_changes_digest,
)

# Program attributes that feed the workflow validations
PROGRAM_CALCULATION_FIELDS = ("proposal_status", "cfp_id")


async def _finish(session: AsyncSession, commit: bool):
    if commit:
        await session.commit()


def _failed(reply: dict) -> bool:
    return not reply["success"]


# ----------------------------------------------------------------------------
# Calls for proposals and programs
# ----------------------------------------------------------------------------


async def add_call_for_proposals(session: AsyncSession, data: dict) -> dict:
    try:
        if not data.get("id") or not data.get("title"):
            return {"success": False, "error": "Call for proposals id and title are required"}

        stmt = (
            insert(CallsForProposals)
            .values(
                id=data["id"],
                title=data["title"],
                instruments=data.get("instruments", []),
                active_start=data.get("active_start"),
                active_end=data.get("active_end"),
            )
            .returning(CallsForProposals)
        )
        result = await session.execute(stmt)
        await session.commit()

        return {"success": True, "data": serialize_object(result.scalar_one()), "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error adding call for proposals: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def edit_call_for_proposals(session: AsyncSession, cfp_id: str, data: dict) -> dict:
    """
    Edit a call for proposals. Every observation of every program under it
    is invalidated through a deferred sweep.
    """
    try:
        values = {
            key: data[key]
            for key in ("title", "instruments", "active_start", "active_end")
            if key in data
        }
        if not values:
            return {"success": False, "error": "Nothing to update"}
        values["updated"] = utcnow()

        stmt = (
            update(CallsForProposals)
            .where(CallsForProposals.id == cfp_id)
            .values(**values)
            .returning(CallsForProposals)
        )
        result = await session.execute(stmt)
        cfp = result.scalar_one_or_none()
        if cfp is None:
            await session.rollback()
            return {"success": False, "error": f"Call for proposals not found: {cfp_id}"}
        cfp = serialize_object(cfp)

        sweep = await notify_changed_for_owner(session, cfp_id=cfp_id)
        if _failed(sweep):
            return sweep
        await session.commit()

        return {"success": True, "data": cfp, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error editing call for proposals: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def add_program(session: AsyncSession, data: dict) -> dict:
    try:
        if not data.get("id") or not data.get("name"):
            return {"success": False, "error": "Program id and name are required"}

        stmt = (
            insert(Programs)
            .values(
                id=data["id"],
                name=data["name"],
                proposal_status=data.get("proposal_status", "not_submitted"),
                cfp_id=data.get("cfp_id"),
            )
            .returning(Programs)
        )
        result = await session.execute(stmt)
        await session.commit()

        return {"success": True, "data": serialize_object(result.scalar_one()), "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error adding program: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def edit_program(session: AsyncSession, program_id: str, data: dict) -> dict:
    """
    Edit a program. Changing its proposal status or its call for proposals
    invalidates all of its observations through a deferred sweep.
    """
    try:
        values = {key: data[key] for key in ("name", "proposal_status", "cfp_id") if key in data}
        if not values:
            return {"success": False, "error": "Nothing to update"}

        before = (
            await session.execute(select(Programs).filter(Programs.id == program_id))
        ).scalar_one_or_none()
        if before is None:
            return {"success": False, "error": f"Program not found: {program_id}"}
        relevant = any(
            getattr(before, key) != values[key] for key in PROGRAM_CALCULATION_FIELDS if key in values
        )

        values["updated"] = utcnow()
        stmt = (
            update(Programs)
            .where(Programs.id == program_id)
            .values(**values)
            .returning(Programs)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        result = await session.execute(stmt)
        program = serialize_object(result.scalar_one())

        if relevant:
            sweep = await notify_changed_for_owner(session, program_id=program_id)
            if _failed(sweep):
                return sweep
        await session.commit()

        return {"success": True, "data": program, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error editing program: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


# ----------------------------------------------------------------------------
# Observations
# ----------------------------------------------------------------------------


async def add_observation(session: AsyncSession, data: dict) -> dict:
    """
    Create an observation and its (pending) calculation record. A telluric
    calibration observation created for a science observation also queues a
    telluric star resolution.
    """
    try:
        if not data.get("id") or not data.get("program_id"):
            return {"success": False, "error": "Observation id and program_id are required"}

        stmt = (
            insert(Observations)
            .values(
                id=data["id"],
                program_id=data["program_id"],
                title=data.get("title"),
                workflow_user_state=data.get("workflow_user_state"),
                calibration_role=data.get("calibration_role"),
                duration_seconds=data.get("duration_seconds"),
            )
            .returning(Observations)
        )
        result = await session.execute(stmt)
        observation = serialize_object(result.scalar_one())

        reply = await notify_changed(session, observation["id"])
        if _failed(reply):
            return reply

        science_id = data.get("science_observation_id")
        if science_id and observation["calibration_role"] == CALIBRATION_ROLE_TELLURIC:
            request = await crud_telluric.record_resolution_request(
                session, observation["program_id"], observation["id"], science_id
            )
            if _failed(request):
                return request
        await session.commit()

        return {"success": True, "data": observation, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error adding observation: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def edit_observation(session: AsyncSession, observation_id: str, data: dict) -> dict:
    try:
        values = {
            key: data[key]
            for key in ("title", "workflow_user_state", "calibration_role", "duration_seconds")
            if key in data
        }
        if not values:
            return {"success": False, "error": "Nothing to update"}
        values["updated"] = utcnow()

        stmt = (
            update(Observations)
            .where(Observations.id == observation_id)
            .values(**values)
            .returning(Observations)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        result = await session.execute(stmt)
        observation = result.scalar_one_or_none()
        if observation is None:
            await session.rollback()
            return {"success": False, "error": f"Observation not found: {observation_id}"}
        observation = serialize_object(observation)

        reply = await notify_changed(session, observation_id)
        if _failed(reply):
            return reply
        await session.commit()

        return {"success": True, "data": observation, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error editing observation: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def delete_observation(session: AsyncSession, observation_id: str) -> dict:
    """
    Delete an observation. Its calculation record goes with it.
    """
    try:
        record = (
            await session.execute(
                select(ObsCalc.program_id, ObsCalc.state).filter(
                    ObsCalc.observation_id == observation_id
                )
            )
        ).first()

        stmt = delete(Observations).where(Observations.id == observation_id).returning(
            Observations.id
        )
        deleted = (await session.execute(stmt)).scalar_one_or_none()
        if deleted is None:
            await session.rollback()
            return {"success": False, "error": f"Observation not found: {observation_id}"}

        # the record itself is removed by the foreign key cascade
        if record is not None:
            stage_transition(
                session,
                observation_id,
                record.program_id,
                record.state,
                record.state,
                edit_type=EDIT_DELETED,
            )
        await session.commit()

        return {"success": True, "data": observation_id, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error deleting observation: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


# ----------------------------------------------------------------------------
# Targets and asterisms
# ----------------------------------------------------------------------------


async def fetch_target(session: AsyncSession, target_id: str) -> dict:
    try:
        stmt = select(Targets).filter(Targets.id == target_id)
        target = (await session.execute(stmt)).scalar_one_or_none()

        return {
            "success": True,
            "data": serialize_object(target) if target else None,
            "error": None,
        }

    except Exception as e:
        logger.error(f"Error fetching target: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def add_target(session: AsyncSession, data: dict, commit: bool = True) -> dict:
    try:
        if not data.get("id") or not data.get("program_id") or not data.get("name"):
            return {"success": False, "error": "Target id, program_id and name are required"}

        stmt = (
            insert(Targets)
            .values(
                id=data["id"],
                program_id=data["program_id"],
                name=data["name"],
                ra=data.get("ra"),
                dec=data.get("dec"),
                existence=data.get("existence", "present"),
                calibration_role=data.get("calibration_role"),
            )
            .returning(Targets)
        )
        result = await session.execute(stmt)
        target = serialize_object(result.scalar_one())
        await _finish(session, commit)

        return {"success": True, "data": target, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error adding target: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def edit_target(session: AsyncSession, target_id: str, data: dict) -> dict:
    """
    Edit a target (name, coordinates, existence, calibration role) and
    invalidate every observation whose asterism includes it.
    """
    try:
        values = {
            key: data[key]
            for key in ("name", "ra", "dec", "existence", "calibration_role")
            if key in data
        }
        if not values:
            return {"success": False, "error": "Nothing to update"}
        values["updated"] = utcnow()

        stmt = (
            update(Targets)
            .where(Targets.id == target_id)
            .values(**values)
            .returning(Targets)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        target = (await session.execute(stmt)).scalar_one_or_none()
        if target is None:
            await session.rollback()
            return {"success": False, "error": f"Target not found: {target_id}"}
        target = serialize_object(target)

        observation_ids = (
            await session.execute(
                select(AsterismTargets.observation_id)
                .filter(AsterismTargets.target_id == target_id)
                .order_by(AsterismTargets.observation_id)
            )
        ).scalars().all()
        reply = await notify_changed_many(session, observation_ids)
        if _failed(reply):
            return reply
        await session.commit()

        return {"success": True, "data": target, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error editing target: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def fetch_asterism(session: AsyncSession, observation_id: str) -> dict:
    try:
        stmt = (
            select(AsterismTargets.target_id)
            .filter(AsterismTargets.observation_id == observation_id)
            .order_by(AsterismTargets.target_id)
        )
        target_ids = (await session.execute(stmt)).scalars().all()

        return {"success": True, "data": list(target_ids), "error": None}

    except Exception as e:
        logger.error(f"Error fetching asterism: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def set_asterism(
    session: AsyncSession, observation_id: str, target_ids: List[str], commit: bool = True
) -> dict:
    """
    Replace the asterism of an observation.
    """
    try:
        program_id = (
            await session.execute(
                select(Observations.program_id).filter(Observations.id == observation_id)
            )
        ).scalar_one_or_none()
        if program_id is None:
            return {"success": False, "error": f"Observation not found: {observation_id}"}

        await session.execute(
            delete(AsterismTargets).where(AsterismTargets.observation_id == observation_id)
        )
        for target_id in dict.fromkeys(target_ids):
            await session.execute(
                insert(AsterismTargets).values(
                    observation_id=observation_id, target_id=target_id, program_id=program_id
                )
            )

        reply = await notify_changed(session, observation_id)
        if _failed(reply):
            return reply
        await _finish(session, commit)

        return {"success": True, "data": list(dict.fromkeys(target_ids)), "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error setting asterism: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def add_asterism_target(session: AsyncSession, observation_id: str, target_id: str) -> dict:
    try:
        program_id = (
            await session.execute(
                select(Observations.program_id).filter(Observations.id == observation_id)
            )
        ).scalar_one_or_none()
        if program_id is None:
            return {"success": False, "error": f"Observation not found: {observation_id}"}

        await session.execute(
            insert(AsterismTargets).values(
                observation_id=observation_id, target_id=target_id, program_id=program_id
            )
        )
        reply = await notify_changed(session, observation_id)
        if _failed(reply):
            return reply
        await session.commit()

        return {"success": True, "data": None, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error adding asterism target: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def remove_asterism_target(
    session: AsyncSession, observation_id: str, target_id: str
) -> dict:
    try:
        stmt = (
            delete(AsterismTargets)
            .where(AsterismTargets.observation_id == observation_id)
            .where(AsterismTargets.target_id == target_id)
            .returning(AsterismTargets.target_id)
        )
        removed = (await session.execute(stmt)).scalar_one_or_none()
        if removed is None:
            await session.rollback()
            return {"success": False, "error": "Target is not part of the asterism"}

        reply = await notify_changed(session, observation_id)
        if _failed(reply):
            return reply
        await session.commit()

        return {"success": True, "data": None, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error removing asterism target: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


# ----------------------------------------------------------------------------
# Observing modes and configuration requests
# ----------------------------------------------------------------------------


async def set_observing_mode(session: AsyncSession, observation_id: str, data: dict) -> dict:
    """
    Create or replace the observing mode (e.g. long slit settings) of an
    observation.
    """
    try:
        if not data.get("instrument") or not data.get("mode_type"):
            return {"success": False, "error": "Instrument and mode_type are required"}

        await session.execute(
            delete(ObservingModes).where(ObservingModes.observation_id == observation_id)
        )
        stmt = (
            insert(ObservingModes)
            .values(
                observation_id=observation_id,
                instrument=data["instrument"],
                mode_type=data["mode_type"],
                params=data.get("params", {}),
            )
            .returning(ObservingModes)
        )
        mode = serialize_object((await session.execute(stmt)).scalar_one())

        reply = await notify_changed(session, observation_id)
        if _failed(reply):
            return reply
        await session.commit()

        return {"success": True, "data": mode, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error setting observing mode: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def clear_observing_mode(session: AsyncSession, observation_id: str) -> dict:
    try:
        stmt = (
            delete(ObservingModes)
            .where(ObservingModes.observation_id == observation_id)
            .returning(ObservingModes.observation_id)
        )
        removed = (await session.execute(stmt)).scalar_one_or_none()
        if removed is not None:
            reply = await notify_changed(session, observation_id)
            if _failed(reply):
                return reply
        await session.commit()

        return {"success": True, "data": removed is not None, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error clearing observing mode: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def upsert_configuration_request(session: AsyncSession, data: dict) -> dict:
    """
    Create or update a configuration request. Requests are program level, so
    every observation of the program is invalidated through a deferred sweep.
    """
    try:
        if not data.get("id") or not data.get("program_id"):
            return {"success": False, "error": "Configuration request id and program_id are required"}

        existing = (
            await session.execute(
                select(ConfigurationRequests).filter(ConfigurationRequests.id == data["id"])
            )
        ).scalar_one_or_none()

        if existing is None:
            stmt = (
                insert(ConfigurationRequests)
                .values(
                    id=data["id"],
                    program_id=data["program_id"],
                    instrument=data["instrument"],
                    mode_type=data["mode_type"],
                    status=data.get("status", "requested"),
                )
                .returning(ConfigurationRequests)
            )
        else:
            stmt = (
                update(ConfigurationRequests)
                .where(ConfigurationRequests.id == data["id"])
                .values(
                    **{
                        key: data[key]
                        for key in ("instrument", "mode_type", "status")
                        if key in data
                    },
                    updated=utcnow(),
                )
                .returning(ConfigurationRequests)
                .execution_options(synchronize_session=False, populate_existing=True)
            )
        request = serialize_object((await session.execute(stmt)).scalar_one())

        sweep = await notify_changed_for_owner(session, program_id=request["program_id"])
        if _failed(sweep):
            return sweep
        await session.commit()

        return {"success": True, "data": request, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error saving configuration request: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


# ----------------------------------------------------------------------------
# Datasets
# ----------------------------------------------------------------------------


async def add_dataset(session: AsyncSession, data: dict) -> dict:
    """
    Record a dataset produced by a completed step.
    """
    try:
        if not data.get("id") or not data.get("observation_id") or not data.get("filename"):
            return {"success": False, "error": "Dataset id, observation_id and filename are required"}

        stmt = (
            insert(Datasets)
            .values(
                id=data["id"],
                observation_id=data["observation_id"],
                filename=data["filename"],
                qa_state=data.get("qa_state"),
            )
            .returning(Datasets)
        )
        dataset = serialize_object((await session.execute(stmt)).scalar_one())

        reply = await notify_changed(session, dataset["observation_id"])
        if _failed(reply):
            return reply
        await session.commit()

        return {"success": True, "data": dataset, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error adding dataset: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def edit_dataset_qa(
    session: AsyncSession, dataset_id: str, qa_state: Optional[str]
) -> dict:
    """
    Set a dataset's QA state. The observation is only invalidated when the
    change moves the dataset between charged and uncharged.
    """
    try:
        dataset = (
            await session.execute(select(Datasets).filter(Datasets.id == dataset_id))
        ).scalar_one_or_none()
        if dataset is None:
            return {"success": False, "error": f"Dataset not found: {dataset_id}"}
        old_qa_state = dataset.qa_state
        observation_id = dataset.observation_id

        stmt = (
            update(Datasets)
            .where(Datasets.id == dataset_id)
            .values(qa_state=qa_state, updated=utcnow())
            .returning(Datasets)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        updated = serialize_object((await session.execute(stmt)).scalar_one())

        invalidated = qa_changes_digest(old_qa_state, qa_state)
        if invalidated:
            reply = await notify_changed(session, observation_id)
            if _failed(reply):
                return reply
        await session.commit()

        updated["invalidated"] = invalidated
        return {"success": True, "data": updated, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error editing dataset QA state: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}
