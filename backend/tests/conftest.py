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
Shared fixtures: a fresh SQLite file per test, sessions bound to it and a
small seeded program.
"""

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

import crud.upstream as crud_upstream
from db import create_engine_for_path, create_sessionmaker, init_db
from db.models import CallsForProposals

# later than any wall clock change made while seeding
T0 = datetime(2100, 1, 1, 12, 0, 0, tzinfo=UTC)


def at(seconds: float) -> datetime:
    """Timestamps relative to a fixed origin so tests can reason in small integers."""
    return T0 + timedelta(seconds=seconds)


@pytest_asyncio.fixture
async def engine(tmp_path):
    test_engine = create_engine_for_path(str(tmp_path / "obscalc-test.db"))
    await init_db(bind=test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_sessionmaker(engine)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def seed(session_factory):
    """
    Returns an async helper creating a call for proposals, a program and
    observations, each with one target and a long slit observing mode.
    """

    async def _seed(
        program_id="p-1",
        observation_ids=("o-1",),
        cfp_id="cfp-1",
        proposal_status="not_submitted",
        instrument="GMOS_NORTH",
        duration_seconds=1800.0,
    ):
        async with session_factory() as session:
            if cfp_id is not None:
                existing = await session.get(CallsForProposals, cfp_id)
                if existing is None:
                    reply = await crud_upstream.add_call_for_proposals(
                        session,
                        {"id": cfp_id, "title": "2026B", "instruments": [instrument]},
                    )
                    assert reply["success"], reply
            reply = await crud_upstream.add_program(
                session,
                {
                    "id": program_id,
                    "name": f"Program {program_id}",
                    "proposal_status": proposal_status,
                    "cfp_id": cfp_id,
                },
            )
            assert reply["success"], reply

            for index, observation_id in enumerate(observation_ids):
                reply = await crud_upstream.add_observation(
                    session,
                    {
                        "id": observation_id,
                        "program_id": program_id,
                        "title": f"Observation {observation_id}",
                        "duration_seconds": duration_seconds,
                    },
                )
                assert reply["success"], reply
                target_id = f"t-{observation_id}"
                reply = await crud_upstream.add_target(
                    session,
                    {
                        "id": target_id,
                        "program_id": program_id,
                        "name": f"NGC {1000 + index}",
                        "ra": 150.0 + index,
                        "dec": -20.0,
                    },
                )
                assert reply["success"], reply
                reply = await crud_upstream.set_asterism(session, observation_id, [target_id])
                assert reply["success"], reply
                reply = await crud_upstream.set_observing_mode(
                    session,
                    observation_id,
                    {
                        "instrument": instrument,
                        "mode_type": "long_slit",
                        "params": {"grating": "R831", "telluric_type": "hot"},
                    },
                )
                assert reply["success"], reply
        return program_id, list(observation_ids)

    return _seed
