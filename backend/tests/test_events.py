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
Tests for the change notifier and its commit-time publication.
"""

import asyncio

import pytest
from conftest import at

import crud.obscalc as crud_obscalc
from obscalc import events
from obscalc.events import CalcStateChanged, ChangeNotifier, change_notifier


def _change(observation_id="o-1", owner_id="p-1", new_state="pending"):
    return CalcStateChanged(
        observation_id=observation_id,
        owner_id=owner_id,
        previous_state=None,
        new_state=new_state,
        edit_type="created",
        kind="obscalc",
    )


def _drain(subscription):
    changes = []
    while subscription.pending():
        changes.append(subscription.get_nowait())
    return changes


class FakeSocketIO:
    def __init__(self):
        self.emitted = []

    async def emit(self, event_name, data, room=None):
        self.emitted.append((event_name, data, room))


@pytest.mark.asyncio
class TestChangeNotifier:
    async def test_owner_subscription_only_sees_its_owner(self):
        notifier = ChangeNotifier()
        mine = notifier.subscribe("p-1")
        everything = notifier.subscribe()

        notifier.publish(_change(owner_id="p-1"))
        notifier.publish(_change(observation_id="o-9", owner_id="p-2"))

        assert [c.observation_id for c in _drain(mine)] == ["o-1"]
        assert [c.observation_id for c in _drain(everything)] == ["o-1", "o-9"]

    async def test_full_queue_drops_oldest(self):
        notifier = ChangeNotifier()
        subscription = notifier.subscribe("p-1", maxsize=2)

        for index in range(3):
            notifier.publish(_change(observation_id=f"o-{index}"))

        assert subscription.dropped == 1
        assert [c.observation_id for c in _drain(subscription)] == ["o-1", "o-2"]

    async def test_closed_subscription_stops_receiving(self):
        notifier = ChangeNotifier()
        with notifier.subscribe("p-1") as subscription:
            assert notifier.subscriber_count("p-1") == 1

        notifier.publish(_change())

        assert notifier.subscriber_count("p-1") == 0
        assert subscription.pending() == 0

    async def test_get_with_timeout(self):
        notifier = ChangeNotifier()
        subscription = notifier.subscribe()

        with pytest.raises(asyncio.TimeoutError):
            await subscription.get(timeout=0.01)

    async def test_to_dict(self):
        assert _change().to_dict() == {
            "observation_id": "o-1",
            "owner_id": "p-1",
            "previous_state": None,
            "new_state": "pending",
            "edit_type": "created",
            "kind": "obscalc",
        }


@pytest.mark.asyncio
class TestCommitTimePublication:
    async def test_transitions_are_published_after_commit(self, db_session, seed):
        await seed()
        with change_notifier.subscribe("p-1") as subscription:
            await crud_obscalc.upsert_dirty(db_session, "o-1", at(10))
            assert subscription.pending() == 0

            await db_session.commit()
            assert subscription.pending() == 0

            claimed = await crud_obscalc.claim(db_session, "o-1")
            await crud_obscalc.complete(db_session, "o-1", claimed["data"]["token"], {}, at(11))

            changes = _drain(subscription)

        assert [(c.previous_state, c.new_state) for c in changes] == [
            ("pending", "calculating"),
            ("calculating", "ready"),
        ]

    async def test_rollback_publishes_nothing(self, db_session, seed):
        await seed()
        claimed = await crud_obscalc.claim(db_session, "o-1")
        await crud_obscalc.complete(db_session, "o-1", claimed["data"]["token"], {}, at(11))

        with change_notifier.subscribe("p-1") as subscription:
            await crud_obscalc.upsert_dirty(db_session, "o-1", at(20))
            await db_session.rollback()

            assert subscription.pending() == 0

    async def test_created_event_on_first_invalidation(self, seed):
        with change_notifier.subscribe("p-1") as subscription:
            await seed()
            changes = _drain(subscription)

        assert changes[0].edit_type == "created"
        assert changes[0].new_state == "pending"
        assert changes[0].kind == "obscalc"

    async def test_socketio_bridge_emits_to_program_room(self):
        notifier = ChangeNotifier()
        sio = FakeSocketIO()
        events.set_socketio_instance(sio)
        bridge = asyncio.create_task(events.run_socketio_bridge(notifier))
        try:
            await asyncio.sleep(0)
            notifier.publish(_change(owner_id="p-7"))
            for _ in range(10):
                if sio.emitted:
                    break
                await asyncio.sleep(0.01)
        finally:
            bridge.cancel()
            await asyncio.gather(bridge, return_exceptions=True)
            events.set_socketio_instance(None)

        event_name, data, room = sio.emitted[0]
        assert event_name == "obscalc-state-changed"
        assert room == "program:p-7"
        assert data["owner_id"] == "p-7"
