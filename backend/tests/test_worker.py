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
Tests for the calculation service and worker pool.
"""

import asyncio

import pytest

from common.exceptions import PermanentComputeError, TransientComputeError
from db.models import CalculationState
from obscalc.compute import ObservationCalculator
from obscalc.events import ChangeNotifier
from obscalc.retry import RetryPolicy
from obscalc.service import ObscalcService
from obscalc.worker import ObscalcWorkerPool

POLICY = RetryPolicy(max_retries=3, base_delay=60.0, max_delay=600.0)


def _pool(service, calculator=None, **kwargs):
    kwargs.setdefault("notifier", ChangeNotifier())
    kwargs.setdefault("poll_interval", 0.05)
    return ObscalcWorkerPool(service, calculator=calculator, **kwargs)


class RaisingCalculator:
    def __init__(self, error):
        self.error = error
        self.calls = 0

    async def __call__(self, snapshot):
        self.calls += 1
        raise self.error


@pytest.mark.asyncio
class TestObscalcWorker:
    """Test suite for single-step worker processing."""

    async def test_nothing_to_do(self, session_factory):
        service = ObscalcService(session_factory, POLICY)

        assert await _pool(service).run_once() is None

    async def test_computes_and_stores_result(self, session_factory, seed):
        await seed()
        service = ObscalcService(session_factory, POLICY)

        outcome = await _pool(service, ObservationCalculator()).run_once()

        assert outcome["outcome"] == "ready"
        result = await service.get_result("o-1")
        assert result["state"] == "ready"
        assert result["stale"] is False
        workflow = result["result"]["workflow"]
        assert workflow["state"] == "defined"
        assert workflow["validation_errors"] == []
        assert result["result"]["digest"]["total_seconds"] == 960.0 + 1800.0

    async def test_transient_error_is_retried(self, session_factory, seed):
        await seed()
        service = ObscalcService(session_factory, POLICY)

        outcome = await _pool(service, RaisingCalculator(TransientComputeError("ITC down"))).run_once()

        assert outcome["outcome"] == "retry"
        assert outcome["failure_count"] == 1
        result = await service.get_result("o-1")
        assert result["state"] == "retry"

    async def test_permanent_error_fails_immediately(self, session_factory, seed):
        await seed()
        service = ObscalcService(session_factory, POLICY)

        outcome = await _pool(
            service, RaisingCalculator(PermanentComputeError("Unsupported mode"))
        ).run_once()

        assert outcome["outcome"] == "failed"
        result = await service.get_result("o-1")
        assert result["state"] == "failed"
        assert result["error_message"] == "Unsupported mode"

    async def test_timeout_counts_as_transient(self, session_factory, seed):
        await seed()
        service = ObscalcService(session_factory, POLICY)

        async def slow(snapshot):
            await asyncio.sleep(5)

        outcome = await _pool(service, slow, compute_timeout=0.05).run_once()

        assert outcome["outcome"] == "retry"

    async def test_invalidation_while_computing_requeues(self, session_factory, seed):
        await seed()
        service = ObscalcService(session_factory, POLICY)

        async def invalidating(snapshot):
            await service.notify_changed(snapshot.observation_id)
            return {"itc": None, "digest": None, "workflow": {}}

        outcome = await _pool(service, invalidating).run_once()

        assert outcome["outcome"] == "pending"
        assert outcome["invalidated"] is True
        result = await service.get_result("o-1")
        assert result["state"] == "pending"
        assert result["stale"] is True

    async def test_missing_observation_fails_permanently(self, session_factory, seed):
        await seed()
        service = ObscalcService(session_factory, POLICY)

        async def vanished(session, observation_id):
            raise PermanentComputeError(f"Observation {observation_id} not found")

        outcome = await _pool(service, snapshot_loader=vanished).run_once()

        assert outcome["outcome"] == "failed"


@pytest.mark.asyncio
class TestObscalcWorkerPool:
    """Test suite for the running pool."""

    async def test_pool_drains_pending_work(self, session_factory, seed):
        await seed(observation_ids=("o-1", "o-2", "o-3"))
        service = ObscalcService(session_factory, POLICY)
        pool = _pool(service, ObservationCalculator(), workers=2)

        await pool.start()
        try:
            for _ in range(100):
                results = await service.get_program_results("p-1")
                if all(result["state"] == "ready" for result in results):
                    break
                await asyncio.sleep(0.05)
        finally:
            await pool.stop()

        assert [result["state"] for result in results] == ["ready", "ready", "ready"]
        assert pool.running is False

    async def test_start_releases_stranded_claims(self, session_factory, seed):
        await seed()
        service = ObscalcService(session_factory, POLICY)
        claim = await service.claim("o-1")
        assert claim is not None

        pool = _pool(service, ObservationCalculator(), workers=1)
        await pool.start()
        try:
            for _ in range(100):
                result = await service.get_result("o-1")
                if result["state"] == CalculationState.READY.value:
                    break
                await asyncio.sleep(0.05)
        finally:
            await pool.stop()

        assert result["state"] == "ready"
