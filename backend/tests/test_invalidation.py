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
Tests for the invalidation tracker and the deferred owner sweeps.
"""

import pytest
from conftest import at

import crud.obscalc as crud_obscalc
from crud.sweeps import fetch_outstanding_sweeps, fetch_sweeps
from db.models import CalculationState
from obscalc import invalidation
from obscalc.invalidation import qa_changes_digest


class TestQaChangesDigest:
    """Only moves between charged and uncharged QA states matter."""

    @pytest.mark.parametrize(
        "old, new",
        [(None, "Fail"), ("pass", "usable"), ("fail", None), ("Usable", "PASS")],
    )
    def test_charge_boundary_crossings(self, old, new):
        assert qa_changes_digest(old, new) is True

    @pytest.mark.parametrize(
        "old, new",
        [(None, "pass"), ("pass", None), ("fail", "usable"), (None, None)],
    )
    def test_moves_within_a_side(self, old, new):
        assert qa_changes_digest(old, new) is False


@pytest.mark.asyncio
class TestInvalidationTracker:
    """Test suite for notify_changed and owner sweeps."""

    async def test_marks_collapse_within_one_transaction(self, db_session, seed):
        await seed()

        first = await invalidation.notify_changed(db_session, "o-1", at(10))
        second = await invalidation.notify_changed(db_session, "o-1", at(20))
        await db_session.commit()

        assert first["data"]["collapsed"] is False
        assert second["data"]["collapsed"] is True
        record = (await crud_obscalc.fetch_obscalc(db_session, "o-1"))["data"]
        assert record["last_invalidation"] == at(10)

    async def test_new_transaction_is_not_collapsed(self, db_session, seed):
        await seed()
        await invalidation.notify_changed(db_session, "o-1", at(10))
        await db_session.commit()

        again = await invalidation.notify_changed(db_session, "o-1", at(20))
        await db_session.commit()

        assert again["data"]["collapsed"] is False
        record = (await crud_obscalc.fetch_obscalc(db_session, "o-1"))["data"]
        assert record["last_invalidation"] == at(20)

    async def test_rollback_discards_the_mark(self, db_session, seed):
        await seed()
        await invalidation.notify_changed(db_session, "o-1", at(10))
        await db_session.rollback()

        reply = await invalidation.notify_changed(db_session, "o-1", at(30))
        await db_session.commit()

        assert reply["data"]["collapsed"] is False
        record = (await crud_obscalc.fetch_obscalc(db_session, "o-1"))["data"]
        assert record["last_invalidation"] == at(30)

    async def test_notify_changed_many(self, db_session, seed):
        await seed(observation_ids=("o-1", "o-2"))

        reply = await invalidation.notify_changed_many(
            db_session, ["o-1", "o-2", "o-1", "ghost"], at(10)
        )
        await db_session.commit()

        assert reply["data"] == ["o-1", "o-2"]

    async def test_owner_change_is_queued_until_swept(self, db_session, session_factory, seed):
        await seed(observation_ids=("o-1", "o-2"))
        await seed(program_id="p-2", observation_ids=("o-3",), cfp_id=None)

        reply = await invalidation.notify_changed_for_owner(
            db_session, program_id="p-1", changed_at=at(50)
        )
        await db_session.commit()
        assert reply["success"] is True

        untouched = (await crud_obscalc.fetch_obscalc(db_session, "o-1"))["data"]
        assert untouched["last_invalidation"] < at(50)

        processed = await invalidation.run_invalidation_sweeps(session_factory, batch_size=1)

        assert processed == 1
        for observation_id in ("o-1", "o-2"):
            record = (await crud_obscalc.fetch_obscalc(db_session, observation_id))["data"]
            assert record["last_invalidation"] == at(50)
            assert record["state"] == CalculationState.PENDING
        other = (await crud_obscalc.fetch_obscalc(db_session, "o-3"))["data"]
        assert other["last_invalidation"] < at(50)
        assert (await fetch_outstanding_sweeps(db_session))["data"] == []

    async def test_cfp_sweep_covers_every_program_under_it(
        self, db_session, session_factory, seed
    ):
        await seed(program_id="p-1", observation_ids=("o-1",))
        await seed(program_id="p-2", observation_ids=("o-2",))

        await invalidation.notify_changed_for_owner(db_session, cfp_id="cfp-1", changed_at=at(5))
        await db_session.commit()
        await invalidation.run_invalidation_sweeps(session_factory, batch_size=10)

        for observation_id in ("o-1", "o-2"):
            record = (await crud_obscalc.fetch_obscalc(db_session, observation_id))["data"]
            assert record["last_invalidation"] == at(5)

    async def test_owner_requires_exactly_one_id(self, db_session):
        neither = await invalidation.notify_changed_for_owner(db_session)
        both = await invalidation.notify_changed_for_owner(db_session, program_id="p", cfp_id="c")

        assert neither["success"] is False
        assert both["success"] is False

    async def test_sweep_waker_runs_after_commit_only(self, db_session, seed):
        await seed()
        calls = []
        invalidation.set_sweep_waker(lambda: calls.append(True))
        try:
            await invalidation.notify_changed_for_owner(
                db_session, program_id="p-1", changed_at=at(1)
            )
            assert calls == []
            await db_session.commit()
            assert calls == [True]

            await invalidation.notify_changed_for_owner(
                db_session, program_id="p-1", changed_at=at(2)
            )
            await db_session.rollback()
            assert calls == [True]
        finally:
            invalidation.set_sweep_waker(None)

        sweeps = (await fetch_sweeps(db_session, program_id="p-1"))["data"]
        assert len(sweeps) == 1
