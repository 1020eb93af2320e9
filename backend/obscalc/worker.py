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
Background workers for the calculation cache.

Each worker repeatedly claims one record, loads the snapshot, runs the
calculator under a timeout and writes the outcome back. Workers share
nothing but the store; the claim is what keeps two of them off the same
observation. An idle worker sleeps until something becomes pending or the
poll interval passes, whichever comes first.
"""

import asyncio
from typing import List, Optional, Set

from common.exceptions import StoreUnavailableError
from common.logger import logger
from db.models import CalculationState
from obscalc.compute import ObservationCalculator
from obscalc.events import ChangeNotifier, change_notifier
from obscalc.retry import describe_failure, is_transient
from obscalc.service import Claim, ObscalcService
from obscalc.snapshot import load_snapshot


class ObscalcWorkerPool:
    def __init__(
        self,
        service: ObscalcService,
        calculator=None,
        workers: int = 8,
        poll_interval: float = 10.0,
        compute_timeout: Optional[float] = 120.0,
        notifier: ChangeNotifier = change_notifier,
        snapshot_loader=load_snapshot,
    ):
        self.service = service
        self.calculator = calculator or ObservationCalculator()
        self.workers = max(workers, 1)
        self.poll_interval = poll_interval
        self.compute_timeout = compute_timeout
        self.notifier = notifier
        self.snapshot_loader = snapshot_loader

        self._tasks: Set[asyncio.Task] = set()
        self._wakeup = asyncio.Event()
        self._stopping = False
        self._subscription = None

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self):
        """Release stranded claims and start the worker tasks."""
        if self._tasks:
            logger.warning("Obscalc worker pool already started")
            return

        self._stopping = False
        released = await self.service.reset()
        if released:
            logger.info(f"Requeued {len(released)} interrupted calculation(s)")

        self._subscription = self.notifier.subscribe()
        self._spawn(self._watch_for_work(), "obscalc-watcher")
        for index in range(self.workers):
            self._spawn(self._worker_loop(index), f"obscalc-worker-{index}")

        # anything already pending is picked up immediately
        self._wakeup.set()
        logger.info(f"Obscalc worker pool started with {self.workers} worker(s)")

    async def stop(self):
        self._stopping = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        logger.info("Obscalc worker pool stopped")

    def wake(self):
        self._wakeup.set()

    def _spawn(self, coro, name: str):
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _watch_for_work(self):
        async for change in self._subscription:
            if change.new_state == CalculationState.PENDING.value:
                self._wakeup.set()

    async def _wait_for_work(self):
        try:
            await asyncio.wait_for(self._wakeup.wait(), self.poll_interval)
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    async def _worker_loop(self, index: int):
        logger.debug(f"Obscalc worker {index} running")
        while not self._stopping:
            try:
                outcome = await self.run_once()
            except StoreUnavailableError as e:
                logger.error(f"Obscalc worker {index}: store unavailable, backing off: {e}")
                await asyncio.sleep(self.poll_interval)
                continue
            except Exception as e:
                logger.error(f"Obscalc worker {index}: unexpected error: {e}")
                logger.exception(e)
                await asyncio.sleep(self.poll_interval)
                continue

            if outcome is None:
                await self._wait_for_work()

    async def run_once(self) -> Optional[dict]:
        """
        Claim and process one record. Returns the write-back outcome, or None
        when nothing was claimable.
        """
        claims: List[Claim] = await self.service.claim_next(1)
        if not claims:
            return None
        return await self.process(claims[0])

    async def process(self, claim: Claim) -> dict:
        logger.debug(f"Calculating {claim.observation_id}")
        try:
            async with self.service.session_factory() as session:
                snapshot = await self.snapshot_loader(session, claim.observation_id)
            if self.compute_timeout:
                result = await asyncio.wait_for(self.calculator(snapshot), self.compute_timeout)
            else:
                result = await self.calculator(snapshot)
        except Exception as e:
            transient = is_transient(e)
            message = describe_failure(e)
            if not transient:
                logger.warning(f"Calculation for {claim.observation_id} rejected: {message}")
            return await self._write_back(self.service.fail, claim, message, transient)

        return await self._write_back(self.service.complete, claim, result)

    async def _write_back(self, operation, claim: Claim, *args) -> dict:
        """
        Keep trying to record the outcome of a claim. The record stays
        calculating until this succeeds (or until the next start resets it).
        """
        while True:
            try:
                return await operation(claim, *args)
            except StoreUnavailableError as e:
                if self._stopping:
                    raise
                logger.error(
                    f"Could not record outcome for {claim.observation_id}, retrying: {e}"
                )
                await asyncio.sleep(self.poll_interval)
