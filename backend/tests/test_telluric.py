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
Tests for telluric star resolution.
"""

import asyncio

import pytest

import crud.telluric as crud_telluric
import crud.upstream as crud_upstream
from common.exceptions import TransientComputeError
from obscalc.events import CalcStateChanged, ChangeNotifier
from obscalc.retry import RetryPolicy
from obscalc.telluric import TelluricResolver, TelluricStar, hip_from_target_name

POLICY = RetryPolicy(max_retries=2, base_delay=60.0, max_delay=600.0)


class FakeCatalog:
    def __init__(self, *answers):
        self.answers = list(answers)
        self.searches = []

    async def __call__(self, search):
        self.searches.append(search)
        answer = self.answers[0] if len(self.answers) == 1 else self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


async def _add_telluric_observation(session_factory, science_id="o-1", observation_id="o-tel"):
    async with session_factory() as session:
        reply = await crud_upstream.add_observation(
            session,
            {
                "id": observation_id,
                "program_id": "p-1",
                "title": "Telluric",
                "calibration_role": "telluric",
                "science_observation_id": science_id,
            },
        )
        assert reply["success"], reply


async def _resolution(session_factory, observation_id="o-tel"):
    async with session_factory() as session:
        return (await crud_telluric.fetch_telluric_resolution(session, observation_id))["data"]


async def _asterism(session_factory, observation_id="o-tel"):
    async with session_factory() as session:
        return (await crud_upstream.fetch_asterism(session, observation_id))["data"]


class TestHipFromTargetName:
    def test_parses_hip_names(self):
        assert hip_from_target_name("HIP 12345") == 12345

    @pytest.mark.parametrize("name", [None, "", "NGC 1000", "HIP twelve"])
    def test_other_names(self, name):
        assert hip_from_target_name(name) is None


@pytest.mark.asyncio
class TestTelluricResolver:
    """Test suite for the resolver against a fake catalog."""

    async def test_request_is_queued_with_the_observation(self, session_factory, seed):
        await seed()
        await _add_telluric_observation(session_factory)

        resolution = await _resolution(session_factory)

        assert resolution["state"] == "pending"
        assert resolution["science_observation_id"] == "o-1"

    async def test_resolves_and_links_star(self, session_factory, seed):
        await seed()
        await _add_telluric_observation(session_factory)
        catalog = FakeCatalog([TelluricStar(hip=4242, ra=151.0, dec=-21.0)])
        resolver = TelluricResolver(session_factory, catalog, POLICY, notifier=ChangeNotifier())

        assert await resolver.run_batch() == 1

        resolution = await _resolution(session_factory)
        assert resolution["state"] == "ready"
        assert resolution["error_message"] is None
        assert await _asterism(session_factory) == [resolution["resolved_target_id"]]
        async with session_factory() as session:
            target = (await crud_upstream.fetch_target(session, resolution["resolved_target_id"]))[
                "data"
            ]
        assert target["name"] == "HIP 4242"
        assert target["calibration_role"] == "telluric"

        search = catalog.searches[0]
        assert (search.ra, search.dec) == (150.0, -20.0)
        assert search.duration_seconds == 1800.0
        assert search.telluric_type == "hot"

    async def test_same_star_keeps_target(self, session_factory, seed):
        await seed()
        await _add_telluric_observation(session_factory)
        catalog = FakeCatalog([TelluricStar(hip=4242, ra=151.0, dec=-21.0)])
        resolver = TelluricResolver(session_factory, catalog, POLICY, notifier=ChangeNotifier())
        await resolver.run_batch()
        first = await _resolution(session_factory)

        requeued = await resolver.recheck_for_science_observation("o-1")

        assert requeued == ["o-tel"]
        second = await _resolution(session_factory)
        assert second["state"] == "ready"
        assert second["resolved_target_id"] == first["resolved_target_id"]
        assert len(catalog.searches) == 2

    async def test_different_star_replaces_target(self, session_factory, seed):
        await seed()
        await _add_telluric_observation(session_factory)
        catalog = FakeCatalog(
            [TelluricStar(hip=1, ra=151.0, dec=-21.0)],
            [TelluricStar(hip=2, ra=152.0, dec=-22.0)],
        )
        resolver = TelluricResolver(session_factory, catalog, POLICY, notifier=ChangeNotifier())
        await resolver.run_batch()
        first = await _resolution(session_factory)

        await resolver.recheck_for_science_observation("o-1")

        second = await _resolution(session_factory)
        assert second["resolved_target_id"] != first["resolved_target_id"]
        assert await _asterism(session_factory) == [second["resolved_target_id"]]

    async def test_catalog_outage_is_retried(self, session_factory, seed):
        await seed()
        await _add_telluric_observation(session_factory)
        catalog = FakeCatalog(TransientComputeError("Telluric catalog unavailable (503)"))
        resolver = TelluricResolver(session_factory, catalog, POLICY, notifier=ChangeNotifier())

        await resolver.run_batch()

        resolution = await _resolution(session_factory)
        assert resolution["state"] == "retry"
        assert resolution["failure_count"] == 1
        assert resolution["error_message"] == "Telluric catalog unavailable (503)"
        # not due yet
        assert await resolver.run_batch() == 0

    async def test_no_star_after_last_retry_settles_without_target(self, session_factory, seed):
        await seed()
        await _add_telluric_observation(session_factory)
        catalog = FakeCatalog([])
        resolver = TelluricResolver(
            session_factory,
            catalog,
            RetryPolicy(max_retries=0, base_delay=1.0, max_delay=1.0),
            notifier=ChangeNotifier(),
        )

        await resolver.run_batch()

        resolution = await _resolution(session_factory)
        assert resolution["state"] == "ready"
        assert resolution["resolved_target_id"] is None
        assert "No telluric stars found" in resolution["error_message"]
        assert await _asterism(session_factory) == []

    async def test_policy_decides_when_catalog_retries_stop(self, session_factory, seed):
        class NoRetries(RetryPolicy):
            def should_retry(self, failure_count):
                return False

        await seed()
        await _add_telluric_observation(session_factory)
        catalog = FakeCatalog(TransientComputeError("Telluric catalog unavailable (503)"))
        resolver = TelluricResolver(
            session_factory,
            catalog,
            NoRetries(max_retries=5, base_delay=60.0, max_delay=600.0),
            notifier=ChangeNotifier(),
        )

        await resolver.run_batch()

        resolution = await _resolution(session_factory)
        assert resolution["state"] == "ready"
        assert resolution["resolved_target_id"] is None
        assert resolution["error_message"] == "Telluric catalog unavailable (503)"

    async def test_missing_science_inputs_are_reported(self, session_factory, seed):
        await seed(duration_seconds=None)
        await _add_telluric_observation(session_factory)
        catalog = FakeCatalog([TelluricStar(hip=1, ra=0.0, dec=0.0)])
        resolver = TelluricResolver(session_factory, catalog, POLICY, notifier=ChangeNotifier())

        await resolver.run_batch()

        resolution = await _resolution(session_factory)
        assert resolution["state"] == "retry"
        assert "Missing observation duration" in resolution["error_message"]
        assert catalog.searches == []

    async def test_ready_science_calculation_triggers_recheck(self, session_factory, seed):
        await seed()
        await _add_telluric_observation(session_factory)
        notifier = ChangeNotifier()
        catalog = FakeCatalog([TelluricStar(hip=7, ra=151.0, dec=-21.0)])
        resolver = TelluricResolver(session_factory, catalog, POLICY, notifier=notifier)

        await resolver.start()
        try:
            assert len(catalog.searches) == 1
            notifier.publish(
                CalcStateChanged(
                    observation_id="o-1",
                    owner_id="p-1",
                    previous_state="calculating",
                    new_state="ready",
                    edit_type="updated",
                    kind="obscalc",
                )
            )
            for _ in range(100):
                if len(catalog.searches) == 2:
                    break
                await asyncio.sleep(0.02)
        finally:
            await resolver.stop()

        assert len(catalog.searches) == 2
        assert (await _resolution(session_factory))["state"] == "ready"
