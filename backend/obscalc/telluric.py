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
Telluric star resolution.

A telluric calibration observation needs a standard star close to its
science observation. Requests are queued per telluric observation and
resolved in the background: the resolver claims a batch, looks up the
science observation's coordinates, observing mode and duration, asks the
catalog for candidate stars and links the best one as the telluric
observation's only target. Failures are retried with backoff up to a limit,
after which the entry settles as ready without a target and with an error
message.

When a science observation's calculation becomes ready its telluric
entries are queued again. Re-resolution keeps the current target if the
catalog still returns the same star.
"""

import asyncio
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import select

import crud.telluric as crud_telluric
import crud.upstream as crud_upstream
from common.exceptions import PermanentComputeError
from common.logger import logger
from db.models import AsterismTargets, CalculationState, ObservingModes, Observations, Targets
from obscalc.constants import (
    CALIBRATION_ROLE_TELLURIC,
    KIND_OBSCALC,
    TELLURIC_TARGET_PREFIX,
)
from obscalc.events import ChangeNotifier, change_notifier
from obscalc.retry import RetryPolicy, describe_failure

# Faintest magnitude accepted for a telluric standard
BRIGHTEST_MAGNITUDE = 8.0
DEFAULT_TELLURIC_TYPE = "hot"


@dataclass(frozen=True)
class TelluricSearchInput:
    ra: float
    dec: float
    duration_seconds: float
    telluric_type: str = DEFAULT_TELLURIC_TYPE
    brightest: float = BRIGHTEST_MAGNITUDE


@dataclass(frozen=True)
class TelluricStar:
    hip: int
    ra: float
    dec: float

    @property
    def target_name(self) -> str:
        return f"{TELLURIC_TARGET_PREFIX}{self.hip}"


CatalogSearch = Callable[[TelluricSearchInput], Awaitable[List[TelluricStar]]]


def hip_from_target_name(name: Optional[str]) -> Optional[int]:
    if not name or not name.startswith(TELLURIC_TARGET_PREFIX):
        return None
    try:
        return int(name[len(TELLURIC_TARGET_PREFIX) :])
    except ValueError:
        return None


async def load_search_input(session, science_observation_id: str) -> TelluricSearchInput:
    """
    Gather the search parameters from the science observation. Raises
    PermanentComputeError naming the first missing input.
    """
    coordinates = (
        await session.execute(
            select(Targets.ra, Targets.dec)
            .join(AsterismTargets, AsterismTargets.target_id == Targets.id)
            .filter(AsterismTargets.observation_id == science_observation_id)
            .filter(Targets.existence == "present")
            .filter(Targets.ra.is_not(None), Targets.dec.is_not(None))
            .order_by(Targets.id)
        )
    ).first()
    if coordinates is None:
        raise PermanentComputeError(
            f"Missing target coordinates for science observation {science_observation_id}"
        )

    mode = (
        await session.execute(
            select(ObservingModes).filter(ObservingModes.observation_id == science_observation_id)
        )
    ).scalar_one_or_none()
    if mode is None:
        raise PermanentComputeError(
            f"Missing observing mode for science observation {science_observation_id}"
        )

    duration = (
        await session.execute(
            select(Observations.duration_seconds).filter(
                Observations.id == science_observation_id
            )
        )
    ).scalar_one_or_none()
    if duration is None:
        raise PermanentComputeError(
            f"Missing observation duration for science observation {science_observation_id}"
        )

    return TelluricSearchInput(
        ra=coordinates.ra,
        dec=coordinates.dec,
        duration_seconds=duration,
        telluric_type=(mode.params or {}).get("telluric_type", DEFAULT_TELLURIC_TYPE),
    )


class TelluricResolver:
    def __init__(
        self,
        session_factory,
        catalog_search: CatalogSearch,
        retry_policy: RetryPolicy,
        batch_size: int = 10,
        notifier: ChangeNotifier = change_notifier,
    ):
        self.session_factory = session_factory
        self.catalog_search = catalog_search
        self.retry_policy = retry_policy
        self.batch_size = batch_size
        self.notifier = notifier
        self._listener: Optional[asyncio.Task] = None
        self._batch_lock = asyncio.Lock()

    async def start(self):
        """Release interrupted entries, resolve what is pending and start listening."""
        async with self.session_factory() as session:
            reply = await crud_telluric.reset_telluric_calculating(session)
        if reply["success"] and reply["data"]:
            logger.info(f"Requeued {len(reply['data'])} interrupted telluric resolution(s)")

        await self.run_batch()

        if self._listener is None:
            subscription = self.notifier.subscribe()
            self._listener = asyncio.create_task(
                self._listen(subscription), name="telluric-listener"
            )
        logger.info("Telluric resolver started")

    async def stop(self):
        if self._listener is not None:
            self._listener.cancel()
            await asyncio.gather(self._listener, return_exceptions=True)
            self._listener = None
        logger.info("Telluric resolver stopped")

    async def _listen(self, subscription):
        try:
            async for change in subscription:
                if (
                    change.kind == KIND_OBSCALC
                    and change.new_state == CalculationState.READY.value
                ):
                    try:
                        await self.recheck_for_science_observation(change.observation_id)
                    except Exception as e:
                        logger.error(f"Error rechecking tellurics for {change.observation_id}: {e}")
                        logger.exception(e)
        finally:
            subscription.close()

    async def recheck_for_science_observation(self, science_observation_id: str) -> List[str]:
        async with self.session_factory() as session:
            reply = await crud_telluric.invalidate_for_science(session, science_observation_id)
            if not reply["success"]:
                logger.error(f"Could not requeue tellurics for {science_observation_id}")
                return []
            await session.commit()

        if reply["data"]:
            logger.info(
                f"Science observation {science_observation_id} changed, "
                f"rechecking {len(reply['data'])} telluric observation(s)"
            )
            await self.run_batch()
        return reply["data"]

    async def run_batch(self) -> int:
        """Claim and resolve up to one batch. Returns the number of entries processed."""
        async with self._batch_lock:
            async with self.session_factory() as session:
                reply = await crud_telluric.claim_telluric_resolutions(session, self.batch_size)
            if not reply["success"]:
                logger.error(f"Could not claim telluric resolutions: {reply['error']}")
                return 0

            for pending in reply["data"]:
                try:
                    await self.resolve(pending)
                except Exception as e:
                    logger.error(f"Error resolving telluric for {pending['observation_id']}: {e}")
                    logger.exception(e)
            return len(reply["data"])

    async def resolve(self, pending: dict) -> Optional[dict]:
        observation_id = pending["observation_id"]
        science_observation_id = pending["science_observation_id"]
        logger.debug(f"Resolving telluric target for observation {observation_id}")

        try:
            async with self.session_factory() as session:
                search = await load_search_input(session, science_observation_id)
            stars = await self.catalog_search(search)
            if not stars:
                raise PermanentComputeError(
                    f"No telluric stars found for observation {observation_id}"
                )
        except Exception as e:
            return await self._record_failure(pending, describe_failure(e))

        star = stars[0]
        async with self.session_factory() as session:
            target_id = await self._link_star(session, pending, star)
            if target_id is None:
                await session.rollback()
                return await self._record_failure(
                    pending, f"Could not link telluric star {star.target_name}"
                )

            reply = await crud_telluric.complete_telluric_resolution(
                session, observation_id, pending["token"], target_id
            )
        if not reply["success"]:
            return None

        if reply["data"] and reply["data"]["state"] == CalculationState.READY:
            logger.info(f"Found telluric star {star.target_name} for observation {observation_id}")
        return reply["data"]

    async def _link_star(self, session, pending: dict, star: TelluricStar) -> Optional[str]:
        """
        Make ``star`` the telluric observation's target, reusing the current
        target when it already is that star. Writes in ``session`` without
        committing.
        """
        current_id = pending.get("resolved_target_id")
        if current_id is not None:
            current = await crud_upstream.fetch_target(session, current_id)
            if current["success"] and current["data"] is not None:
                if hip_from_target_name(current["data"]["name"]) == star.hip:
                    logger.info(
                        f"Telluric star unchanged for {pending['observation_id']} ({star.target_name})"
                    )
                    return current_id

        created = await crud_upstream.add_target(
            session,
            {
                "id": f"t-{uuid.uuid4().hex[:12]}",
                "program_id": pending["program_id"],
                "name": star.target_name,
                "ra": star.ra,
                "dec": star.dec,
                "calibration_role": CALIBRATION_ROLE_TELLURIC,
            },
            commit=False,
        )
        if not created["success"]:
            return None

        target_id = created["data"]["id"]
        linked = await crud_upstream.set_asterism(
            session, pending["observation_id"], [target_id], commit=False
        )
        if not linked["success"]:
            return None
        return target_id

    async def _record_failure(self, pending: dict, message: str) -> Optional[dict]:
        observation_id = pending["observation_id"]
        if self.retry_policy.should_retry(pending["failure_count"]):
            logger.warning(
                f"Telluric resolution for {observation_id} failed "
                f"(attempt {pending['failure_count'] + 1}), will retry: {message}"
            )
        else:
            logger.error(
                f"Telluric resolution for {observation_id} permanently failed after "
                f"{pending['failure_count']} attempts: {message}"
            )

        async with self.session_factory() as session:
            reply = await crud_telluric.fail_telluric_resolution(
                session,
                observation_id,
                pending["token"],
                pending["failure_count"],
                message,
                self.retry_policy,
            )
        return reply["data"] if reply["success"] else None


async def record_resolution_request(
    session, program_id: str, observation_id: str, science_observation_id: str
) -> dict:
    """Queue a telluric resolution for ``observation_id``. Does not commit."""
    return await crud_telluric.record_resolution_request(
        session, program_id, observation_id, science_observation_id
    )
