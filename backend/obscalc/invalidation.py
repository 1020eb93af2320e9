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
Invalidation tracker.

Write paths that touch data a calculation depends on call ``notify_changed``
(one observation) or ``notify_changed_for_owner`` (every observation of a
program or of a call for proposals) inside their own transaction. Marks are
collapsed per observation and per transaction. Owner-level invalidations
are queued and resolved later by ``run_invalidation_sweeps``.
"""

from datetime import datetime
from typing import Callable, Iterable, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

import crud.obscalc as crud_obscalc
import crud.sweeps as crud_sweeps
from common.logger import logger
from common.utils import ensure_utc, utcnow
from obscalc.constants import QA_CHARGEABLE, QA_NOT_CHARGEABLE

# Keys used in AsyncSession.info
DIRTY_KEY = "obscalc_dirty"
SWEEP_REQUESTED_KEY = "obscalc_sweep_requested"

# Called after a commit that queued an owner-level sweep (set by the scheduler)
_sweep_waker: Optional[Callable[[], None]] = None


def set_sweep_waker(waker: Optional[Callable[[], None]]):
    global _sweep_waker
    _sweep_waker = waker


@event.listens_for(Session, "after_commit")
def _after_commit(session):
    session.info.pop(DIRTY_KEY, None)
    if session.info.pop(SWEEP_REQUESTED_KEY, False) and _sweep_waker is not None:
        _sweep_waker()


@event.listens_for(Session, "after_rollback")
def _after_rollback(session):
    session.info.pop(DIRTY_KEY, None)
    session.info.pop(SWEEP_REQUESTED_KEY, None)


async def notify_changed(
    session: AsyncSession, observation_id: str, changed_at: Optional[datetime] = None
) -> dict:
    """
    Mark one observation dirty as of ``changed_at`` (now by default). A second
    mark for the same observation in the same transaction is a no-op. Does
    not commit.
    """
    marks = session.info.setdefault(DIRTY_KEY, {})
    if observation_id in marks:
        return {
            "success": True,
            "data": {"observation_id": observation_id, "collapsed": True, "changed": False},
            "error": None,
        }

    changed_at = ensure_utc(changed_at) or utcnow()
    reply = await crud_obscalc.upsert_dirty(session, observation_id, changed_at)
    if not reply["success"]:
        return reply

    data = reply["data"]
    if data["exists"]:
        session.info.setdefault(DIRTY_KEY, {})[observation_id] = changed_at
        if data["changed"]:
            logger.debug(
                f"Invalidated {observation_id} at {changed_at.isoformat()} "
                f"({data['previous_state']} -> {data['state']})"
            )
    data["collapsed"] = False
    return reply


async def notify_changed_many(
    session: AsyncSession, observation_ids: Iterable[str], changed_at: Optional[datetime] = None
) -> dict:
    """
    Mark several observations dirty with the same change time.
    """
    changed_at = ensure_utc(changed_at) or utcnow()
    invalidated = []
    for observation_id in dict.fromkeys(observation_ids):
        reply = await notify_changed(session, observation_id, changed_at)
        if not reply["success"]:
            return reply
        if reply["data"].get("changed"):
            invalidated.append(observation_id)

    return {"success": True, "data": invalidated, "error": None}


async def notify_changed_for_owner(
    session: AsyncSession,
    program_id: Optional[str] = None,
    cfp_id: Optional[str] = None,
    changed_at: Optional[datetime] = None,
) -> dict:
    """
    Invalidate every observation of a program, or of every program under a
    call for proposals. The work is queued as a sweep and performed after the
    caller commits. Until the sweep has run, no covered record can become
    ready with a result older than ``changed_at``.
    """
    changed_at = ensure_utc(changed_at) or utcnow()
    reply = await crud_sweeps.add_sweep(
        session, changed_at, program_id=program_id, cfp_id=cfp_id
    )
    if reply["success"]:
        session.info[SWEEP_REQUESTED_KEY] = True
        owner = f"program {program_id}" if program_id is not None else f"call for proposals {cfp_id}"
        logger.info(f"Queued invalidation sweep {reply['data']['id']} for {owner}")
    return reply


def qa_changes_digest(old_qa_state: Optional[str], new_qa_state: Optional[str]) -> bool:
    """
    Whether a dataset QA transition affects the execution digest: only moves
    between the chargeable states (unset, pass) and the non-chargeable ones
    (fail, usable) count.
    """

    def normalize(state):
        return state.lower() if isinstance(state, str) else state

    old_qa_state = normalize(old_qa_state)
    new_qa_state = normalize(new_qa_state)
    return (old_qa_state in QA_CHARGEABLE and new_qa_state in QA_NOT_CHARGEABLE) or (
        old_qa_state in QA_NOT_CHARGEABLE and new_qa_state in QA_CHARGEABLE
    )


def _chunks(items, size):
    for start in range(0, len(items), size):
        yield items[start : start + size]


async def run_invalidation_sweeps(session_factory, batch_size: int) -> int:
    """
    Resolve every outstanding sweep to its observations and invalidate them in
    batches of ``batch_size``, one transaction per batch. A sweep is marked
    processed only after all of its batches committed, so an interrupted
    sweep is simply repeated. Returns the number of sweeps processed.
    """
    async with session_factory() as session:
        reply = await crud_sweeps.fetch_outstanding_sweeps(session)
    if not reply["success"]:
        logger.error(f"Could not load outstanding sweeps: {reply['error']}")
        return 0

    processed = 0
    for sweep in reply["data"]:
        async with session_factory() as session:
            ids_reply = await crud_sweeps.fetch_sweep_observation_ids(session, sweep)
        if not ids_reply["success"]:
            logger.error(f"Could not resolve sweep {sweep['id']}: {ids_reply['error']}")
            continue

        observation_ids = ids_reply["data"]
        completed = True
        for chunk in _chunks(observation_ids, max(batch_size, 1)):
            async with session_factory() as session:
                many = await notify_changed_many(session, chunk, sweep["change_time"])
                if not many["success"]:
                    logger.error(f"Sweep {sweep['id']} batch failed: {many['error']}")
                    completed = False
                    break
                await session.commit()

        if not completed:
            continue

        async with session_factory() as session:
            marked = await crud_sweeps.mark_sweep_processed(session, sweep["id"])
        if marked["success"]:
            processed += 1
            logger.info(
                f"Invalidation sweep {sweep['id']} covered {len(observation_ids)} observation(s)"
            )

    return processed
