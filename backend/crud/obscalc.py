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
Store operations for the per-observation calculation cache.

Every state change is a single compare-and-set UPDATE so that concurrent
workers and invalidations never need to hold a lock across a computation.
The token handed out by a claim is the record's ``last_invalidation`` at
claim time; ``complete`` and ``fail`` only take effect while it still
matches.
"""

import traceback
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, delete, not_, or_, select, update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession

from common.logger import logger
from common.utils import ensure_utc, serialize_object, utcnow
from crud.sweeps import (
    EPOCH,
    has_outstanding_sweep,
    latest_outstanding_change,
    outstanding_sweep_clause,
)
from db.models import CalculationState, ObsCalc, Observations

# Keys used in AsyncSession.info
TRANSITIONS_KEY = "calc_transitions"

OUTCOME_READY = "ready"
OUTCOME_PENDING = "pending"
OUTCOME_LOST = "lost"


def stage_transition(
    session: AsyncSession,
    observation_id: str,
    program_id: str,
    previous_state,
    new_state,
    edit_type: str = "updated",
    kind: str = "obscalc",
):
    """
    Remember a state transition so it can be announced once the session commits.
    """
    session.info.setdefault(TRANSITIONS_KEY, []).append(
        {
            "observation_id": observation_id,
            "program_id": program_id,
            "previous_state": _state_value(previous_state),
            "new_state": _state_value(new_state),
            "edit_type": edit_type,
            "kind": kind,
        }
    )


def _state_value(state):
    if state is None:
        return None
    return CalculationState(state).value


def _claimable(now: datetime):
    return or_(
        ObsCalc.state == CalculationState.PENDING,
        and_(ObsCalc.state == CalculationState.RETRY, ObsCalc.retry_at <= now),
    )


def _is_stale(record: dict) -> bool:
    # a change stamped just before a concurrent completion can leave
    # last_invalidation < last_update on a record that is waiting for work
    if record["state"] not in (CalculationState.READY, CalculationState.FAILED):
        return True
    last_update = record.get("last_update")
    return last_update is None or record["last_invalidation"] > last_update


def _record_to_dict(record: ObsCalc) -> dict:
    return {
        "observation_id": record.observation_id,
        "program_id": record.program_id,
        "state": CalculationState(record.state),
        "last_invalidation": record.last_invalidation,
        "last_update": record.last_update,
        "retry_at": record.retry_at,
        "failure_count": record.failure_count,
        "result": record.result,
        "error_message": record.error_message,
    }


async def fetch_obscalc(session: AsyncSession, observation_id: str) -> dict:
    """
    Fetch the raw calculation record for an observation, or None if the
    observation has never been invalidated.
    """
    try:
        stmt = (
            select(ObsCalc)
            .filter(ObsCalc.observation_id == observation_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        record = result.scalar_one_or_none()

        return {
            "success": True,
            "data": _record_to_dict(record) if record else None,
            "error": None,
        }

    except Exception as e:
        logger.error(f"Error fetching obscalc record for {observation_id}: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def fetch_obscalc_result(session: AsyncSession, observation_id: str) -> dict:
    """
    Read view of a calculation record. The ``stale`` flag is set while the
    record has not caught up with its last invalidation, or while an
    owner-level sweep newer than the last computation is still outstanding.
    """
    try:
        reply = await fetch_obscalc(session, observation_id)
        if not reply["success"]:
            return reply
        record = reply["data"]
        if record is None:
            return {"success": True, "data": None, "error": None}

        stale = _is_stale(record)
        if not stale:
            sweep = await has_outstanding_sweep(
                session, record["program_id"], record["last_update"]
            )
            if not sweep["success"]:
                return sweep
            stale = sweep["data"]

        data = serialize_object(record)
        data["stale"] = stale

        return {"success": True, "data": data, "error": None}

    except Exception as e:
        logger.error(f"Error reading obscalc result for {observation_id}: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def fetch_program_obscalc(session: AsyncSession, program_id: str) -> dict:
    """
    Fetch every calculation record that belongs to a program, each with the
    same ``stale`` flag as ``fetch_obscalc_result``.
    """
    try:
        stmt = (
            select(ObsCalc)
            .filter(ObsCalc.program_id == program_id)
            .order_by(ObsCalc.observation_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        rows = result.scalars().all()

        # every record shares the program, so one lookup covers them all
        latest_sweep = (
            await session.execute(latest_outstanding_change(program_id, EPOCH))
        ).scalar()

        records = []
        for record in rows:
            record = _record_to_dict(record)
            stale = _is_stale(record) or (
                latest_sweep is not None
                and ensure_utc(latest_sweep) > (record["last_update"] or EPOCH)
            )
            record = serialize_object(record)
            record["stale"] = stale
            records.append(record)

        return {"success": True, "data": records, "error": None}

    except Exception as e:
        logger.error(f"Error fetching obscalc records for program {program_id}: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def upsert_dirty(session: AsyncSession, observation_id: str, changed_at: datetime) -> dict:
    """
    Mark an observation's result dirty as of ``changed_at``.

    Creates a pending record on first invalidation. An existing record moves
    ``last_invalidation`` forward, forgets any retry bookkeeping or terminal
    error and returns to pending; a record that is being calculated stays
    calculating so the running worker notices on write-back. Invalidations
    that are not newer than the current ``last_invalidation`` change nothing.

    Runs in the caller's transaction and does not commit.
    """
    try:
        changed_at = ensure_utc(changed_at)

        # A concurrent writer can slip in between the read and the conditional
        # update, in which case we read again.
        for _ in range(5):
            stmt = select(
                ObsCalc.program_id,
                ObsCalc.state,
                ObsCalc.last_invalidation,
            ).filter(ObsCalc.observation_id == observation_id)
            current = (await session.execute(stmt)).mappings().first()

            if current is None:
                program_id = (
                    await session.execute(
                        select(Observations.program_id).filter(Observations.id == observation_id)
                    )
                ).scalar_one_or_none()
                if program_id is None:
                    return {
                        "success": True,
                        "data": {
                            "observation_id": observation_id,
                            "exists": False,
                            "created": False,
                            "changed": False,
                        },
                        "error": None,
                    }

                stmt = (
                    insert(ObsCalc)
                    .values(
                        observation_id=observation_id,
                        program_id=program_id,
                        state=CalculationState.PENDING,
                        last_invalidation=changed_at,
                        failure_count=0,
                    )
                    .on_conflict_do_nothing(index_elements=["observation_id"])
                    .returning(ObsCalc.observation_id)
                )
                inserted = (await session.execute(stmt)).first()
                if inserted is None:
                    continue

                stage_transition(
                    session,
                    observation_id,
                    program_id,
                    None,
                    CalculationState.PENDING,
                    edit_type="created",
                )
                return {
                    "success": True,
                    "data": {
                        "observation_id": observation_id,
                        "program_id": program_id,
                        "exists": True,
                        "created": True,
                        "changed": True,
                        "previous_state": None,
                        "state": CalculationState.PENDING,
                    },
                    "error": None,
                }

            previous_state = CalculationState(current["state"])
            if current["last_invalidation"] >= changed_at:
                return {
                    "success": True,
                    "data": {
                        "observation_id": observation_id,
                        "program_id": current["program_id"],
                        "exists": True,
                        "created": False,
                        "changed": False,
                        "previous_state": previous_state,
                        "state": previous_state,
                    },
                    "error": None,
                }

            if previous_state == CalculationState.CALCULATING:
                new_state = CalculationState.CALCULATING
            else:
                new_state = CalculationState.PENDING

            stmt = (
                update(ObsCalc)
                .where(ObsCalc.observation_id == observation_id)
                .where(ObsCalc.state == previous_state)
                .where(ObsCalc.last_invalidation == current["last_invalidation"])
                .values(
                    state=new_state,
                    last_invalidation=changed_at,
                    retry_at=None,
                    failure_count=0,
                    error_message=None,
                )
                .returning(ObsCalc.observation_id)
                .execution_options(synchronize_session=False)
            )
            updated = (await session.execute(stmt)).first()
            if updated is None:
                continue

            if new_state != previous_state:
                stage_transition(
                    session, observation_id, current["program_id"], previous_state, new_state
                )
            return {
                "success": True,
                "data": {
                    "observation_id": observation_id,
                    "program_id": current["program_id"],
                    "exists": True,
                    "created": False,
                    "changed": True,
                    "previous_state": previous_state,
                    "state": new_state,
                },
                "error": None,
            }

        return {
            "success": False,
            "error": f"Could not mark {observation_id} dirty: record kept changing",
        }

    except Exception as e:
        await session.rollback()
        logger.error(f"Error invalidating obscalc record for {observation_id}: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def _claim_one(session: AsyncSession, observation_id: str, now: datetime) -> Optional[dict]:
    stmt = (
        update(ObsCalc)
        .where(ObsCalc.observation_id == observation_id)
        .where(_claimable(now))
        .values(state=CalculationState.CALCULATING)
        .returning(
            ObsCalc.observation_id,
            ObsCalc.program_id,
            ObsCalc.last_invalidation,
            ObsCalc.retry_at,
            ObsCalc.failure_count,
        )
        .execution_options(synchronize_session=False)
    )
    row = (await session.execute(stmt)).mappings().first()
    if row is None:
        return None

    # retry_at is only ever set on records that were waiting to retry
    previous_state = (
        CalculationState.RETRY if row["retry_at"] is not None else CalculationState.PENDING
    )
    stage_transition(
        session,
        row["observation_id"],
        row["program_id"],
        previous_state,
        CalculationState.CALCULATING,
    )
    return {
        "observation_id": row["observation_id"],
        "program_id": row["program_id"],
        "token": row["last_invalidation"],
        "failure_count": row["failure_count"],
        "previous_state": previous_state,
    }


async def claim(session: AsyncSession, observation_id: str, now: Optional[datetime] = None) -> dict:
    """
    Claim one observation for calculation. ``data`` is None when the record
    is not claimable (absent, already calculating, ready, failed, or waiting
    for its retry time).
    """
    try:
        claimed = await _claim_one(session, observation_id, ensure_utc(now) or utcnow())
        await session.commit()

        if claimed:
            logger.debug(f"Claimed {observation_id} (token {claimed['token'].isoformat()})")

        return {"success": True, "data": claimed, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error claiming obscalc record for {observation_id}: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def claim_next(
    session: AsyncSession, limit: int = 1, now: Optional[datetime] = None
) -> dict:
    """
    Claim up to ``limit`` claimable records, oldest invalidation first.
    Candidates taken by a concurrent worker in the meantime are skipped.
    """
    try:
        now = ensure_utc(now) or utcnow()
        stmt = (
            select(ObsCalc.observation_id)
            .filter(_claimable(now))
            .order_by(ObsCalc.last_invalidation, ObsCalc.observation_id)
            .limit(limit)
        )
        candidates = (await session.execute(stmt)).scalars().all()

        claimed: List[dict] = []
        for observation_id in candidates:
            one = await _claim_one(session, observation_id, now)
            if one is not None:
                claimed.append(one)
        await session.commit()

        return {"success": True, "data": claimed, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error claiming pending obscalc records: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def _return_to_pending(
    session: AsyncSession, observation_id: str, result: Optional[dict] = None
) -> Optional[dict]:
    values = {
        "state": CalculationState.PENDING,
        "retry_at": None,
        "failure_count": 0,
    }
    if result is not None:
        values["result"] = result

    stmt = (
        update(ObsCalc)
        .where(ObsCalc.observation_id == observation_id)
        .where(ObsCalc.state == CalculationState.CALCULATING)
        .values(**values)
        .returning(ObsCalc.program_id, ObsCalc.last_invalidation)
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
    )
    return dict(row)


async def _catch_up_with_sweeps(session: AsyncSession, observation_id: str, token: datetime):
    """
    A completion blocked by an outstanding sweep moves ``last_invalidation``
    up to that sweep's change time, so the next claim is not blocked again.
    """
    program_id = (
        await session.execute(
            select(ObsCalc.program_id).filter(ObsCalc.observation_id == observation_id)
        )
    ).scalar_one_or_none()
    if program_id is None:
        return

    change_time = (await session.execute(latest_outstanding_change(program_id, token))).scalar()
    if change_time is None:
        return

    await session.execute(
        update(ObsCalc)
        .where(ObsCalc.observation_id == observation_id)
        .where(ObsCalc.state == CalculationState.CALCULATING)
        .where(ObsCalc.last_invalidation < change_time)
        .values(last_invalidation=change_time)
        .execution_options(synchronize_session=False)
    )


def _lost(observation_id: str) -> dict:
    return {
        "observation_id": observation_id,
        "outcome": OUTCOME_LOST,
        "invalidated": False,
        "state": None,
    }


async def complete(
    session: AsyncSession,
    observation_id: str,
    token: datetime,
    result: dict,
    computed_at: Optional[datetime] = None,
) -> dict:
    """
    Store a computed result for a claim.

    The record becomes ready only if it is still calculating under the same
    token and no owner-level sweep newer than the token is outstanding.
    Otherwise it goes back to pending with ``result`` kept as a best-effort
    value and ``last_update`` untouched. ``outcome`` is ``lost`` when the
    record is no longer calculating at all (deleted or reset).
    """
    try:
        token = ensure_utc(token)
        computed_at = ensure_utc(computed_at) or utcnow()

        stmt = (
            update(ObsCalc)
            .where(ObsCalc.observation_id == observation_id)
            .where(ObsCalc.state == CalculationState.CALCULATING)
            .where(ObsCalc.last_invalidation == token)
            .where(not_(outstanding_sweep_clause(ObsCalc.program_id, token)))
            .values(
                state=CalculationState.READY,
                result=result,
                last_update=max(computed_at, token),
                retry_at=None,
                failure_count=0,
                error_message=None,
            )
            .returning(ObsCalc.program_id)
            .execution_options(synchronize_session=False)
        )
        row = (await session.execute(stmt)).mappings().first()

        if row is not None:
            stage_transition(
                session,
                observation_id,
                row["program_id"],
                CalculationState.CALCULATING,
                CalculationState.READY,
            )
            data = {
                "observation_id": observation_id,
                "program_id": row["program_id"],
                "outcome": OUTCOME_READY,
                "invalidated": False,
                "state": CalculationState.READY,
            }
        else:
            await _catch_up_with_sweeps(session, observation_id, token)
            pending = await _return_to_pending(session, observation_id, result)
            if pending is None:
                data = _lost(observation_id)
            else:
                data = {
                    "observation_id": observation_id,
                    "program_id": pending["program_id"],
                    "outcome": OUTCOME_PENDING,
                    "invalidated": True,
                    "state": CalculationState.PENDING,
                }

        await session.commit()

        return {"success": True, "data": data, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error completing obscalc record for {observation_id}: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def fail(
    session: AsyncSession,
    observation_id: str,
    token: datetime,
    message: str,
    retry_policy,
    transient: bool = True,
    failed_at: Optional[datetime] = None,
) -> dict:
    """
    Record a failed calculation for a claim.

    A transient failure the policy still allows to retry moves the record to
    retry with ``retry_at`` set by the policy's backoff. Anything else is
    terminal: the record becomes failed with ``error_message`` populated and
    the retry bookkeeping cleared. If the record was invalidated since the
    claim, the failure is moot and the record simply returns to pending.
    """
    try:
        token = ensure_utc(token)
        failed_at = ensure_utc(failed_at) or utcnow()

        stmt = select(
            ObsCalc.program_id,
            ObsCalc.state,
            ObsCalc.last_invalidation,
            ObsCalc.failure_count,
        ).filter(ObsCalc.observation_id == observation_id)
        current = (await session.execute(stmt)).mappings().first()

        data = None
        if (
            current is not None
            and current["state"] == CalculationState.CALCULATING
            and current["last_invalidation"] == token
        ):
            failure_count = current["failure_count"]
            if transient and retry_policy.should_retry(failure_count):
                new_state = CalculationState.RETRY
                values = {
                    "state": new_state,
                    "failure_count": failure_count + 1,
                    "retry_at": failed_at + retry_policy.delay(failure_count),
                }
            else:
                new_state = CalculationState.FAILED
                values = {
                    "state": new_state,
                    "failure_count": 0,
                    "retry_at": None,
                    "error_message": message,
                    "last_update": max(failed_at, token),
                }

            stmt = (
                update(ObsCalc)
                .where(ObsCalc.observation_id == observation_id)
                .where(ObsCalc.state == CalculationState.CALCULATING)
                .where(ObsCalc.last_invalidation == token)
                .where(ObsCalc.failure_count == failure_count)
                .values(**values)
                .returning(ObsCalc.retry_at)
                .execution_options(synchronize_session=False)
            )
            row = (await session.execute(stmt)).mappings().first()
            if row is not None:
                stage_transition(
                    session,
                    observation_id,
                    current["program_id"],
                    CalculationState.CALCULATING,
                    new_state,
                )
                data = {
                    "observation_id": observation_id,
                    "program_id": current["program_id"],
                    "outcome": new_state.value,
                    "invalidated": False,
                    "state": new_state,
                    "failure_count": values["failure_count"],
                    "retry_at": row["retry_at"],
                }

        if data is None:
            pending = await _return_to_pending(session, observation_id)
            if pending is None:
                data = _lost(observation_id)
            else:
                data = {
                    "observation_id": observation_id,
                    "program_id": pending["program_id"],
                    "outcome": OUTCOME_PENDING,
                    "invalidated": True,
                    "state": CalculationState.PENDING,
                }

        await session.commit()

        return {"success": True, "data": data, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error recording failure for obscalc record {observation_id}: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def reset_calculating(session: AsyncSession) -> dict:
    """
    Release every record left calculating by a worker that went away. Records
    that had been waiting to retry go back to retry, everything else to pending.
    """
    try:
        reset = []
        for target_state, condition, values in (
            (
                CalculationState.RETRY,
                ObsCalc.retry_at.is_not(None),
                {"state": CalculationState.RETRY},
            ),
            (
                CalculationState.PENDING,
                ObsCalc.retry_at.is_(None),
                {"state": CalculationState.PENDING, "failure_count": 0},
            ),
        ):
            stmt = (
                update(ObsCalc)
                .where(ObsCalc.state == CalculationState.CALCULATING)
                .where(condition)
                .values(**values)
                .returning(ObsCalc.observation_id, ObsCalc.program_id)
                .execution_options(synchronize_session=False)
            )
            for row in (await session.execute(stmt)).mappings().all():
                stage_transition(
                    session,
                    row["observation_id"],
                    row["program_id"],
                    CalculationState.CALCULATING,
                    target_state,
                )
                reset.append(row["observation_id"])

        await session.commit()

        if reset:
            logger.info(f"Released {len(reset)} calculation(s) left in progress")

        return {"success": True, "data": reset, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error resetting calculating obscalc records: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}


async def delete_obscalc(session: AsyncSession, observation_id: str) -> dict:
    try:
        stmt = (
            delete(ObsCalc)
            .where(ObsCalc.observation_id == observation_id)
            .returning(ObsCalc.program_id, ObsCalc.state)
            .execution_options(synchronize_session=False)
        )
        row = (await session.execute(stmt)).mappings().first()
        if row is not None:
            stage_transition(
                session,
                observation_id,
                row["program_id"],
                row["state"],
                row["state"],
                edit_type="deleted",
            )
        await session.commit()

        return {"success": True, "data": row is not None, "error": None}

    except Exception as e:
        await session.rollback()
        logger.error(f"Error deleting obscalc record for {observation_id}: {e}")
        logger.error(traceback.format_exc())
        return {"success": False, "error": str(e)}
