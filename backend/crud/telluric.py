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
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession

from common.logger import logger
from common.utils import ensure_utc, serialize_object, utcnow
from crud.obscalc import stage_transition
from db.models import CalculationState, TelluricResolutions

KIND = "telluric"


def _claimable(now: datetime):
    return or_(
        TelluricResolutions.state == CalculationState.PENDING,
        and_(
            TelluricResolutions.state == CalculationState.RETRY,
            TelluricResolutions.retry_at <= now,
        ),
    )


async def fetch_telluric_resolution(session: AsyncSession, observation_id: str) -> dict:
    try:
        stmt = (
            select(TelluricResolutions)
            .filter(TelluricResolutions.observation_id == observation_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        resolution = result.scalar_one_or_none()
        if resolution:
            resolution = serialize_object(resolution)

        return {"success": True, "data": resolution, "error": None}

    except Exception as e:
        logger.error(f"Error fetching telluric resolution for {observation_id}: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def fetch_telluric_resolutions_for_science(
    session: AsyncSession, science_observation_id: str
) -> dict:
    try:
        stmt = (
            select(TelluricResolutions)
            .filter(TelluricResolutions.science_observation_id == science_observation_id)
            .order_by(TelluricResolutions.observation_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        resolutions = [serialize_object(r) for r in result.scalars().all()]

        return {"success": True, "data": resolutions, "error": None}

    except Exception as e:
        logger.error(f"Error fetching telluric resolutions for {science_observation_id}: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def record_resolution_request(
    session: AsyncSession,
    program_id: str,
    observation_id: str,
    science_observation_id: str,
    requested_at: Optional[datetime] = None,
) -> dict:
    """
    Ask for a telluric star to be found for ``observation_id`` based on the
    science observation it calibrates. Re-requesting an existing entry puts it
    back to pending (unless a resolver is working on it) with a clean retry
    history. Runs in the caller's transaction.
    """
    try:
        requested_at = ensure_utc(requested_at) or utcnow()

        existing = (
            await session.execute(
                select(TelluricResolutions.state).filter(
                    TelluricResolutions.observation_id == observation_id
                )
            )
        ).scalar_one_or_none()

        stmt = insert(TelluricResolutions).values(
            observation_id=observation_id,
            program_id=program_id,
            science_observation_id=science_observation_id,
            state=CalculationState.PENDING,
            last_invalidation=requested_at,
            failure_count=0,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["observation_id"],
            set_={
                "state": case(
                    (
                        TelluricResolutions.state == CalculationState.CALCULATING,
                        TelluricResolutions.state,
                    ),
                    else_=stmt.excluded.state,
                ),
                "science_observation_id": science_observation_id,
                "last_invalidation": requested_at,
                "retry_at": None,
                "failure_count": 0,
                "error_message": None,
            },
        )
        await session.execute(stmt)

        if existing is None:
            stage_transition(
                session,
                observation_id,
                program_id,
                None,
                CalculationState.PENDING,
                edit_type="created",
                kind=KIND,
            )
        elif existing not in (CalculationState.PENDING, CalculationState.CALCULATING):
            stage_transition(
                session, observation_id, program_id, existing, CalculationState.PENDING, kind=KIND
            )

        return {
            "success": True,
            "data": {"observation_id": observation_id, "created": existing is None},
            "error": None,
        }

    except Exception as e:
        await session.rollback()
        logger.error(f"Error recording telluric resolution request for {observation_id}: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def invalidate_for_science(
    session: AsyncSession, science_observation_id: str, changed_at: Optional[datetime] = None
) -> dict:
    """
    Send every telluric entry of a science observation back to pending.
    Entries being resolved keep their state but get a new invalidation time,
    which makes their in-flight result go back to pending on write-back.
    """
    try:
        changed_at = ensure_utc(changed_at) or utcnow()
        common = {
            "last_invalidation": changed_at,
            "retry_at": None,
            "failure_count": 0,
            "error_message": None,
        }

        stmt = (
            update(TelluricResolutions)
            .where(TelluricResolutions.science_observation_id == science_observation_id)
            .where(TelluricResolutions.last_invalidation < changed_at)
            .where(TelluricResolutions.state == CalculationState.CALCULATING)
            .values(**common)
            .execution_options(synchronize_session=False)
        )
        await session.execute(stmt)

        previous = (
            await session.execute(
                select(
                    TelluricResolutions.observation_id,
                    TelluricResolutions.program_id,
                    TelluricResolutions.state,
                ).filter(
                    TelluricResolutions.science_observation_id == science_observation_id,
                    TelluricResolutions.last_invalidation < changed_at,
                    TelluricResolutions.state != CalculationState.CALCULATING,
                )
            )
        ).mappings().all()

        stmt = (
            update(TelluricResolutions)
            .where(TelluricResolutions.science_observation_id == science_observation_id)
            .where(TelluricResolutions.last_invalidation < changed_at)
            .where(TelluricResolutions.state != CalculationState.CALCULATING)
            .values(state=CalculationState.PENDING, **common)
            .returning(TelluricResolutions.observation_id)
            .execution_options(synchronize_session=False)
        )
        updated = set((await session.execute(stmt)).scalars().all())

        for row in previous:
            if row["observation_id"] in updated and row["state"] != CalculationState.PENDING:
                stage_transition(
                    session,
                    row["observation_id"],
                    row["program_id"],
                    row["state"],
                    CalculationState.PENDING,
                    kind=KIND,
                )

        return {"success": True, "data": sorted(updated), "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error invalidating telluric entries for {science_observation_id}: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def claim_telluric_resolutions(
    session: AsyncSession, limit: int, now: Optional[datetime] = None
) -> dict:
    """
    Claim up to ``limit`` entries that are pending or due for a retry.
    """
    try:
        now = ensure_utc(now) or utcnow()
        candidates = (
            await session.execute(
                select(TelluricResolutions.observation_id)
                .filter(_claimable(now))
                .order_by(TelluricResolutions.last_invalidation)
                .limit(limit)
            )
        ).scalars().all()

        claimed: List[dict] = []
        for observation_id in candidates:
            stmt = (
                update(TelluricResolutions)
                .where(TelluricResolutions.observation_id == observation_id)
                .where(_claimable(now))
                .values(state=CalculationState.CALCULATING)
                .returning(
                    TelluricResolutions.observation_id,
                    TelluricResolutions.program_id,
                    TelluricResolutions.science_observation_id,
                    TelluricResolutions.last_invalidation,
                    TelluricResolutions.retry_at,
                    TelluricResolutions.failure_count,
                    TelluricResolutions.resolved_target_id,
                )
                .execution_options(synchronize_session=False)
            )
            row = (await session.execute(stmt)).mappings().first()
            if row is None:
                continue

            previous_state = (
                CalculationState.RETRY if row["retry_at"] is not None else CalculationState.PENDING
            )
            stage_transition(
                session,
                observation_id,
                row["program_id"],
                previous_state,
                CalculationState.CALCULATING,
                kind=KIND,
            )
            claimed.append(
                {
                    "observation_id": row["observation_id"],
                    "program_id": row["program_id"],
                    "science_observation_id": row["science_observation_id"],
                    "token": row["last_invalidation"],
                    "failure_count": row["failure_count"],
                    "resolved_target_id": row["resolved_target_id"],
                }
            )

        await session.commit()

        return {"success": True, "data": claimed, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error claiming telluric resolutions: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def _settle(
    session: AsyncSession, observation_id: str, token: datetime, values: dict
) -> Optional[dict]:
    stmt = (
        update(TelluricResolutions)
        .where(TelluricResolutions.observation_id == observation_id)
        .where(TelluricResolutions.state == CalculationState.CALCULATING)
        .where(TelluricResolutions.last_invalidation == token)
        .values(**values)
        .returning(TelluricResolutions.program_id)
        .execution_options(synchronize_session=False)
    )
    row = (await session.execute(stmt)).mappings().first()
    if row is not None:
        stage_transition(
            session,
            observation_id,
            row["program_id"],
            CalculationState.CALCULATING,
            values["state"],
            kind=KIND,
        )
        return {"observation_id": observation_id, "state": values["state"]}

    # Invalidated while resolving: run again.
    stmt = (
        update(TelluricResolutions)
        .where(TelluricResolutions.observation_id == observation_id)
        .where(TelluricResolutions.state == CalculationState.CALCULATING)
        .values(state=CalculationState.PENDING, retry_at=None, failure_count=0)
        .returning(TelluricResolutions.program_id)
        .execution_options(synchronize_session=False)
    )
    row = (await session.execute(stmt)).mappings().first()
    if row is None:
        return None

    stage_transition(
        session,
        observation_id,
        row["program_id"],
        CalculationState.CALCULATING,
        CalculationState.PENDING,
        kind=KIND,
    )
    return {"observation_id": observation_id, "state": CalculationState.PENDING}


async def complete_telluric_resolution(
    session: AsyncSession,
    observation_id: str,
    token: datetime,
    target_id: Optional[str],
    resolved_at: Optional[datetime] = None,
) -> dict:
    """
    Record the resolved star for a claim. Commits the caller's transaction,
    so any target and asterism writes made for the resolution land together
    with the state change.
    """
    try:
        resolved_at = ensure_utc(resolved_at) or utcnow()
        settled = await _settle(
            session,
            observation_id,
            ensure_utc(token),
            {
                "state": CalculationState.READY,
                "resolved_target_id": target_id,
                "last_update": resolved_at,
                "retry_at": None,
                "failure_count": 0,
                "error_message": None,
            },
        )
        await session.commit()

        return {"success": True, "data": settled, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error completing telluric resolution for {observation_id}: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def fail_telluric_resolution(
    session: AsyncSession,
    observation_id: str,
    token: datetime,
    failure_count: int,
    message: str,
    retry_policy,
    failed_at: Optional[datetime] = None,
) -> dict:
    """
    Record a failed resolution. Below the retry limit the entry waits in
    retry; past it the entry is settled as ready without a target and with
    ``error_message`` explaining why.
    """
    try:
        failed_at = ensure_utc(failed_at) or utcnow()
        if retry_policy.should_retry(failure_count):
            values = {
                "state": CalculationState.RETRY,
                "failure_count": failure_count + 1,
                "retry_at": failed_at + retry_policy.delay(failure_count),
                "error_message": message,
            }
        else:
            values = {
                "state": CalculationState.READY,
                "resolved_target_id": None,
                "last_update": failed_at,
                "retry_at": None,
                "error_message": message,
            }

        settled = await _settle(session, observation_id, ensure_utc(token), values)
        await session.commit()

        return {"success": True, "data": settled, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error recording telluric failure for {observation_id}: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def reset_telluric_calculating(session: AsyncSession) -> dict:
    try:
        reset = []
        for target_state, condition in (
            (CalculationState.RETRY, TelluricResolutions.retry_at.is_not(None)),
            (CalculationState.PENDING, TelluricResolutions.retry_at.is_(None)),
        ):
            stmt = (
                update(TelluricResolutions)
                .where(TelluricResolutions.state == CalculationState.CALCULATING)
                .where(condition)
                .values(state=target_state)
                .returning(TelluricResolutions.observation_id, TelluricResolutions.program_id)
                .execution_options(synchronize_session=False)
            )
            for row in (await session.execute(stmt)).mappings().all():
                stage_transition(
                    session,
                    row["observation_id"],
                    row["program_id"],
                    CalculationState.CALCULATING,
                    target_state,
                    kind=KIND,
                )
                reset.append(row["observation_id"])
        await session.commit()

        return {"success": True, "data": reset, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error resetting telluric resolutions: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}
