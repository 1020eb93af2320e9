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
End-to-end behaviour of the calculation cache through the service layer.
"""

import asyncio
from datetime import datetime

import pytest
from conftest import at

from obscalc.compute import ObservationCalculator
from obscalc.events import ChangeNotifier
from obscalc.retry import RetryPolicy
from obscalc.service import ObscalcService
from obscalc.worker import ObscalcWorkerPool

RESULT = {"itc": None, "digest": None, "workflow": {"state": "defined"}}
LATER = at(100000)


@pytest.fixture
def service(session_factory):
    return ObscalcService(
        session_factory, RetryPolicy(max_retries=3, base_delay=60.0, max_delay=600.0)
    )


@pytest.mark.asyncio
class TestCalculationLifecycle:
    """Walk observations through complete claim / compute / write-back cycles."""

    async def test_first_change_then_clean_completion(self, service, seed):
        await seed()
        assert await service.delete("o-1") is True

        reply = await service.notify_changed("o-1", at(10))
        assert reply["created"] is True
        record = await service.get_result("o-1")
        assert record["state"] == "pending"
        assert record["last_invalidation"] == at(10).isoformat()

        claim = await service.claim("o-1")
        assert claim.token == at(10)
        outcome = await service.complete(claim, RESULT, computed_at=at(12))

        assert outcome["outcome"] == "ready"
        record = await service.get_result("o-1")
        assert record["state"] == "ready"
        assert record["last_update"] == at(12).isoformat()
        assert record["stale"] is False

    async def test_change_during_compute_requires_another_cycle(self, service, seed):
        await seed()
        await service.notify_changed("o-1", at(10))

        claim = await service.claim("o-1")
        await service.notify_changed("o-1", at(11))
        outcome = await service.complete(claim, RESULT, computed_at=at(12))

        assert outcome["outcome"] == "pending"
        record = await service.get_result("o-1")
        assert record["state"] == "pending"
        assert record["last_invalidation"] == at(11).isoformat()

        again = await service.claim("o-1")
        assert again.token == at(11)
        outcome = await service.complete(again, RESULT, computed_at=at(13))
        assert outcome["outcome"] == "ready"

    async def test_repeated_transient_failures_become_terminal(self, service, seed):
        await seed()
        await service.notify_changed("o-1", at(10))

        counts = []
        for attempt in range(3):
            claim = await service.claim("o-1", now=LATER)
            outcome = await service.fail(claim, "ITC unavailable", failed_at=at(20 + attempt))
            assert outcome["outcome"] == "retry"
            counts.append(outcome["failure_count"])
        assert counts == [1, 2, 3]

        claim = await service.claim("o-1", now=LATER)
        outcome = await service.fail(claim, "ITC unavailable", failed_at=at(30))

        assert outcome["outcome"] == "failed"
        record = await service.get_result("o-1")
        assert record["state"] == "failed"
        assert record["error_message"] == "ITC unavailable"
        assert record["failure_count"] == 0
        assert record["retry_at"] is None

    async def test_new_input_clears_terminal_failure(self, service, seed):
        await seed()
        await service.notify_changed("o-1", at(10))
        claim = await service.claim("o-1")
        await service.fail(claim, "Unsupported mode", transient=False, failed_at=at(11))

        await service.notify_changed("o-1", at(40))

        record = await service.get_result("o-1")
        assert record["state"] == "pending"
        assert record["error_message"] is None

    async def test_new_input_overrides_retry_backoff(self, service, seed):
        await seed()
        await service.notify_changed("o-1", at(10))
        claim = await service.claim("o-1")
        await service.fail(claim, "ITC unavailable", failed_at=at(11))
        assert await service.claim("o-1", now=at(12)) is None

        await service.notify_changed("o-1", at(13))

        record = await service.get_result("o-1")
        assert record["state"] == "pending"
        assert record["failure_count"] == 0
        assert record["retry_at"] is None
        assert await service.claim("o-1", now=at(14)) is not None

    async def test_repeat_invalidation_is_a_no_op(self, service, seed):
        await seed()
        await service.notify_changed("o-1", at(10))

        earlier = await service.notify_changed("o-1", at(5))
        same = await service.notify_changed("o-1", at(10))
        later = await service.notify_changed("o-1", at(15))

        assert earlier["changed"] is False
        assert same["changed"] is False
        assert later["changed"] is True
        assert later["previous_state"] == "pending"
        assert later["state"] == "pending"


@pytest.mark.asyncio
class TestConcurrentWorkers:
    async def test_only_one_concurrent_claim_wins(self, service, seed):
        await seed()

        claims = await asyncio.gather(*(service.claim("o-1") for _ in range(5)))

        winners = [claim for claim in claims if claim is not None]
        assert len(winners) == 1

    async def test_pool_converges_after_changes_stop(self, service, seed):
        await seed(observation_ids=("o-1", "o-2"))
        pool = ObscalcWorkerPool(
            service, calculator=ObservationCalculator(), notifier=ChangeNotifier(),
            workers=2, poll_interval=0.05,
        )

        await pool.start()
        try:
            for _ in range(3):
                await service.notify_changed("o-1")
                await asyncio.sleep(0.01)
            last_change = (await service.get_result("o-1"))["last_invalidation"]

            for _ in range(100):
                results = await service.get_program_results("p-1")
                if all(result["state"] == "ready" for result in results):
                    break
                await asyncio.sleep(0.05)
        finally:
            await pool.stop()

        record = await service.get_result("o-1")
        assert record["state"] == "ready"
        assert record["stale"] is False
        assert datetime.fromisoformat(record["last_update"]) >= datetime.fromisoformat(last_change)
