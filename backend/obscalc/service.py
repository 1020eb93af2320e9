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
Claim / complete / fail protocol over the calculation records.

Each call opens its own session. An unsuccessful store reply is raised as
StoreUnavailableError; every other outcome, including losing a race against
an invalidation, is an ordinary return value.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import crud.obscalc as crud_obscalc
from common.exceptions import StoreUnavailableError
from common.logger import logger
from obscalc import invalidation
from obscalc.retry import RetryPolicy


@dataclass(frozen=True)
class Claim:
    observation_id: str
    program_id: str
    token: datetime
    failure_count: int = 0

    @classmethod
    def from_data(cls, data: dict) -> "Claim":
        return cls(
            observation_id=data["observation_id"],
            program_id=data["program_id"],
            token=data["token"],
            failure_count=data["failure_count"],
        )


def _unwrap(reply: dict, action: str):
    if not reply["success"]:
        raise StoreUnavailableError(f"{action}: {reply.get('error')}")
    return reply.get("data")


async def _commit(session, action: str):
    try:
        await session.commit()
    except Exception as e:
        await session.rollback()
        logger.error(f"Error committing {action}: {e}")
        raise StoreUnavailableError(f"{action}: {e}") from e


class ObscalcService:
    def __init__(self, session_factory, retry_policy: RetryPolicy):
        self.session_factory = session_factory
        self.retry_policy = retry_policy

    async def claim(self, observation_id: str, now: Optional[datetime] = None) -> Optional[Claim]:
        async with self.session_factory() as session:
            data = _unwrap(
                await crud_obscalc.claim(session, observation_id, now), f"claim {observation_id}"
            )
        return Claim.from_data(data) if data else None

    async def claim_next(self, limit: int = 1, now: Optional[datetime] = None) -> List[Claim]:
        async with self.session_factory() as session:
            data = _unwrap(await crud_obscalc.claim_next(session, limit, now), "claim next")
        return [Claim.from_data(item) for item in data]

    async def complete(
        self, claim: Claim, result: dict, computed_at: Optional[datetime] = None
    ) -> dict:
        async with self.session_factory() as session:
            outcome = _unwrap(
                await crud_obscalc.complete(
                    session, claim.observation_id, claim.token, result, computed_at
                ),
                f"complete {claim.observation_id}",
            )

        if outcome["outcome"] == crud_obscalc.OUTCOME_READY:
            logger.info(f"Calculation for {claim.observation_id} is ready")
        elif outcome["outcome"] == crud_obscalc.OUTCOME_PENDING:
            logger.info(
                f"Calculation for {claim.observation_id} was invalidated while running, "
                "queued again"
            )
        else:
            logger.warning(f"Claim on {claim.observation_id} was lost before completion")
        return outcome

    async def fail(
        self,
        claim: Claim,
        message: str,
        transient: bool = True,
        failed_at: Optional[datetime] = None,
    ) -> dict:
        async with self.session_factory() as session:
            outcome = _unwrap(
                await crud_obscalc.fail(
                    session,
                    claim.observation_id,
                    claim.token,
                    message,
                    self.retry_policy,
                    transient=transient,
                    failed_at=failed_at,
                ),
                f"fail {claim.observation_id}",
            )

        if outcome["outcome"] == "retry":
            logger.warning(
                f"Calculation for {claim.observation_id} failed ({message}), "
                f"retry {outcome['failure_count']} at {outcome['retry_at'].isoformat()}"
            )
        elif outcome["outcome"] == "failed":
            logger.error(f"Calculation for {claim.observation_id} failed permanently: {message}")
        return outcome

    async def get_result(self, observation_id: str) -> Optional[dict]:
        async with self.session_factory() as session:
            return _unwrap(
                await crud_obscalc.fetch_obscalc_result(session, observation_id),
                f"read {observation_id}",
            )

    async def get_program_results(self, program_id: str) -> List[dict]:
        async with self.session_factory() as session:
            return _unwrap(
                await crud_obscalc.fetch_program_obscalc(session, program_id),
                f"read program {program_id}",
            )

    async def notify_changed(
        self, observation_id: str, changed_at: Optional[datetime] = None
    ) -> dict:
        async with self.session_factory() as session:
            data = _unwrap(
                await invalidation.notify_changed(session, observation_id, changed_at),
                f"invalidate {observation_id}",
            )
            await _commit(session, "invalidation")
        return data

    async def notify_changed_for_owner(
        self,
        program_id: Optional[str] = None,
        cfp_id: Optional[str] = None,
        changed_at: Optional[datetime] = None,
    ) -> dict:
        async with self.session_factory() as session:
            data = _unwrap(
                await invalidation.notify_changed_for_owner(
                    session, program_id=program_id, cfp_id=cfp_id, changed_at=changed_at
                ),
                "invalidate owner",
            )
            await _commit(session, "invalidation")
        return data

    async def reset(self) -> List[str]:
        async with self.session_factory() as session:
            return _unwrap(await crud_obscalc.reset_calculating(session), "reset")

    async def delete(self, observation_id: str) -> bool:
        async with self.session_factory() as session:
            return _unwrap(
                await crud_obscalc.delete_obscalc(session, observation_id),
                f"delete {observation_id}",
            )
