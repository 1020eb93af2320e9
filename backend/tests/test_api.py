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
Tests for the HTTP read and invalidation routes.
"""

import httpx
import pytest
import pytest_asyncio
from conftest import at
from fastapi import FastAPI

import crud.obscalc as crud_obscalc
from crud.sweeps import fetch_outstanding_sweeps
from handlers.api import register_obscalc_routes


@pytest_asyncio.fixture
async def client(session_factory):
    app = FastAPI()
    register_obscalc_routes(app, session_factory)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client


@pytest.mark.asyncio
class TestObscalcRoutes:
    async def test_unknown_observation_is_404(self, client):
        response = await client.get("/api/obscalc/ghost")

        assert response.status_code == 404

    async def test_read_result(self, client, seed):
        await seed()

        response = await client.get("/api/obscalc/o-1")

        assert response.status_code == 200
        body = response.json()
        assert body["observation_id"] == "o-1"
        assert body["state"] == "pending"
        assert body["stale"] is True

    async def test_program_results(self, client, seed):
        await seed(observation_ids=("o-1", "o-2"))

        response = await client.get("/api/programs/p-1/obscalc")

        assert [record["observation_id"] for record in response.json()] == ["o-1", "o-2"]

    async def test_invalidate_observation(self, client, seed, db_session):
        await seed()

        response = await client.post(
            "/api/obscalc/o-1/invalidate", json={"changed_at": at(10).isoformat()}
        )

        assert response.status_code == 200
        assert response.json() == {"observation_id": "o-1", "changed": True}
        record = (await crud_obscalc.fetch_obscalc(db_session, "o-1"))["data"]
        assert record["last_invalidation"] == at(10)

    async def test_invalidate_unknown_observation(self, client):
        response = await client.post("/api/obscalc/ghost/invalidate", json={})

        assert response.status_code == 404

    async def test_invalidate_program_queues_sweep(self, client, seed, db_session):
        await seed()

        response = await client.post("/api/programs/p-1/invalidate", json={})

        assert response.status_code == 202
        sweeps = (await fetch_outstanding_sweeps(db_session))["data"]
        assert [sweep["id"] for sweep in sweeps] == [response.json()["sweep_id"]]

    async def test_invalidate_cfp_queues_sweep(self, client, seed, db_session):
        await seed()

        response = await client.post(
            "/api/cfps/cfp-1/invalidate", json={"changed_at": at(3).isoformat()}
        )

        assert response.status_code == 202
        sweeps = (await fetch_outstanding_sweeps(db_session))["data"]
        assert sweeps[0]["cfp_id"] == "cfp-1"

    async def test_telluric_resolutions_for_science_observation(self, client, seed):
        await seed()

        response = await client.get("/api/observations/o-1/tellurics")

        assert response.status_code == 200
        assert response.json() == []
