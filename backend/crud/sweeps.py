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

import traceback
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import exists, func, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from common.logger import logger
from common.utils import serialize_object, utcnow
from db.models import InvalidationSweeps, Observations, Programs

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _covering_sweep_criteria(program_id_column, since):
    cfp_id = (
        select(Programs.cfp_id)
        .where(Programs.id == program_id_column)
        .correlate_except(Programs)
        .scalar_subquery()
    )
    return (
        InvalidationSweeps.processed_at.is_(None),
        InvalidationSweeps.change_time > since,
        or_(
            InvalidationSweeps.program_id == program_id_column,
            InvalidationSweeps.cfp_id == cfp_id,
        ),
    )


def outstanding_sweep_clause(program_id_column, since):
    """
    EXISTS clause matching an unprocessed sweep newer than ``since`` that
    covers the program in ``program_id_column``, either directly or through
    the program's call for proposals.
    """
    return (
        exists()
        .where(*_covering_sweep_criteria(program_id_column, since))
        .correlate_except(InvalidationSweeps)
    )


def latest_outstanding_change(program_id, since):
    """Scalar select of the newest change time among the sweeps matched above."""
    return select(func.max(InvalidationSweeps.change_time)).where(
        *_covering_sweep_criteria(program_id, since)
    )


async def add_sweep(
    session: AsyncSession,
    change_time: datetime,
    program_id: Optional[str] = None,
    cfp_id: Optional[str] = None,
) -> dict:
    """
    Queue an owner-level invalidation. The row is written in the caller's
    transaction and becomes visible to the sweep job when the caller commits.
    """
    try:
        if (program_id is None) == (cfp_id is None):
            return {
                "success": False,
                "error": "Exactly one of program_id or cfp_id is required",
            }

        stmt = (
            insert(InvalidationSweeps)
            .values(program_id=program_id, cfp_id=cfp_id, change_time=change_time, added=utcnow())
            .returning(InvalidationSweeps.id)
        )
        result = await session.execute(stmt)
        sweep_id = result.scalar_one()

        return {"success": True, "data": {"id": sweep_id}, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error queueing invalidation sweep: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def fetch_outstanding_sweeps(session: AsyncSession, limit: Optional[int] = None) -> dict:
    """
    Fetch unprocessed sweeps, oldest first.
    """
    try:
        stmt = (
            select(InvalidationSweeps)
            .filter(InvalidationSweeps.processed_at.is_(None))
            .order_by(InvalidationSweeps.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await session.execute(stmt)
        sweeps = [
            {
                "id": sweep.id,
                "program_id": sweep.program_id,
                "cfp_id": sweep.cfp_id,
                "change_time": sweep.change_time,
            }
            for sweep in result.scalars().all()
        ]

        return {"success": True, "data": sweeps, "error": None}

    except Exception as e:
        logger.error(f"Error fetching outstanding sweeps: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def fetch_sweep_observation_ids(session: AsyncSession, sweep: dict) -> dict:
    """
    Resolve a sweep to the ids of the observations it covers.
    """
    try:
        stmt = select(Observations.id).order_by(Observations.id)
        if sweep.get("program_id") is not None:
            stmt = stmt.filter(Observations.program_id == sweep["program_id"])
        else:
            stmt = stmt.join(Programs, Programs.id == Observations.program_id).filter(
                Programs.cfp_id == sweep["cfp_id"]
            )
        result = await session.execute(stmt)

        return {"success": True, "data": list(result.scalars().all()), "error": None}

    except Exception as e:
        logger.error(f"Error resolving sweep {sweep.get('id')}: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def mark_sweep_processed(
    session: AsyncSession, sweep_id: int, processed_at: Optional[datetime] = None
) -> dict:
    try:
        stmt = (
            update(InvalidationSweeps)
            .where(InvalidationSweeps.id == sweep_id)
            .where(InvalidationSweeps.processed_at.is_(None))
            .values(processed_at=processed_at or utcnow())
            .returning(InvalidationSweeps.id)
        )
        result = await session.execute(stmt)
        await session.commit()

        return {"success": True, "data": result.scalar_one_or_none() is not None, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error marking sweep {sweep_id} processed: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def has_outstanding_sweep(
    session: AsyncSession, program_id: str, since: Optional[datetime]
) -> dict:
    """
    Whether an unprocessed sweep newer than ``since`` covers ``program_id``.
    A ``since`` of None means the caller has never computed anything, so any
    outstanding sweep counts.
    """
    try:
        if since is None:
            since = EPOCH
        stmt = select(outstanding_sweep_clause(program_id, since))
        result = await session.execute(stmt)

        return {"success": True, "data": bool(result.scalar()), "error": None}

    except Exception as e:
        logger.error(f"Error checking outstanding sweeps for {program_id}: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def fetch_sweeps(session: AsyncSession, program_id: Optional[str] = None) -> dict:
    try:
        stmt = select(InvalidationSweeps).order_by(InvalidationSweeps.id)
        if program_id is not None:
            stmt = stmt.filter(InvalidationSweeps.program_id == program_id)
        result = await session.execute(stmt)
        sweeps = [serialize_object(sweep) for sweep in result.scalars().all()]

        return {"success": True, "data": sweeps, "error": None}

    except Exception as e:
        logger.error(f"Error fetching sweeps: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}
