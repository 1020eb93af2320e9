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
Change notifications for calculation records.

Store operations stage their state transitions on the database session.
Once the session commits, the staged transitions are published as
``CalcStateChanged`` events to the process-wide ``change_notifier``;
a rollback throws them away. Subscribers listen either to one program
(owner) or to everything, and should treat events as hints to re-read the
record rather than as the authoritative state.
"""

import asyncio
from dataclasses import asdict, dataclass
from typing import Dict, Optional, Set

from sqlalchemy import event
from sqlalchemy.orm import Session

from common.logger import logger
from crud.obscalc import TRANSITIONS_KEY
from obscalc.constants import (
    DEFAULT_SUBSCRIPTION_QUEUE_SIZE,
    PROGRAM_ROOM_PREFIX,
    STATE_CHANGED_EVENT,
)

# Global socketio instance (set by startup.py)
_sio = None


@dataclass(frozen=True)
class CalcStateChanged:
    observation_id: str
    owner_id: str
    previous_state: Optional[str]
    new_state: Optional[str]
    edit_type: str
    kind: str

    @classmethod
    def from_transition(cls, transition: dict) -> "CalcStateChanged":
        return cls(
            observation_id=transition["observation_id"],
            owner_id=transition["program_id"],
            previous_state=transition["previous_state"],
            new_state=transition["new_state"],
            edit_type=transition["edit_type"],
            kind=transition["kind"],
        )

    def to_dict(self) -> dict:
        return asdict(self)


class Subscription:
    """A bounded queue of events for one subscriber."""

    def __init__(self, notifier: "ChangeNotifier", owner_id: Optional[str], maxsize: int):
        self.notifier = notifier
        self.owner_id = owner_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def deliver(self, change: CalcStateChanged):
        if self.closed:
            return
        if self.queue.full():
            # slow subscriber: keep the newest events
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(change)

    async def get(self, timeout: Optional[float] = None) -> CalcStateChanged:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    def get_nowait(self) -> CalcStateChanged:
        return self.queue.get_nowait()

    def pending(self) -> int:
        return self.queue.qsize()

    def close(self):
        if not self.closed:
            self.closed = True
            self.notifier.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> CalcStateChanged:
        if self.closed:
            raise StopAsyncIteration
        return await self.get()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class ChangeNotifier:
    """In-process publish/subscribe channel scoped by owner (program) id."""

    def __init__(self):
        self._subscriptions: Dict[Optional[str], Set[Subscription]] = {}

    def subscribe(
        self, owner_id: Optional[str] = None, maxsize: int = DEFAULT_SUBSCRIPTION_QUEUE_SIZE
    ) -> Subscription:
        """
        Subscribe to events for one owner, or to all events when ``owner_id``
        is None.
        """
        subscription = Subscription(self, owner_id, maxsize)
        self._subscriptions.setdefault(owner_id, set()).add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        subscribers = self._subscriptions.get(subscription.owner_id)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscriptions[subscription.owner_id]

    def publish(self, change: CalcStateChanged):
        recipients = list(self._subscriptions.get(change.owner_id, ()))
        if change.owner_id is not None:
            recipients.extend(self._subscriptions.get(None, ()))
        for subscription in recipients:
            subscription.deliver(change)

    def subscriber_count(self, owner_id: Optional[str] = None) -> int:
        return len(self._subscriptions.get(owner_id, ()))


change_notifier = ChangeNotifier()


@event.listens_for(Session, "after_commit")
def _publish_staged_transitions(session):
    transitions = session.info.pop(TRANSITIONS_KEY, None)
    if not transitions:
        return
    for transition in transitions:
        change = CalcStateChanged.from_transition(transition)
        logger.debug(
            f"{change.kind} {change.observation_id}: "
            f"{change.previous_state} -> {change.new_state} ({change.edit_type})"
        )
        change_notifier.publish(change)


@event.listens_for(Session, "after_rollback")
def _discard_staged_transitions(session):
    session.info.pop(TRANSITIONS_KEY, None)


def set_socketio_instance(sio):
    """Set the global socketio instance for event emission."""
    global _sio
    _sio = sio


def program_room(program_id: str) -> str:
    return f"{PROGRAM_ROOM_PREFIX}{program_id}"


async def emit_state_changed(change: CalcStateChanged):
    """Emit a state change to the clients that follow the owning program."""
    if _sio:
        await _sio.emit(STATE_CHANGED_EVENT, change.to_dict(), room=program_room(change.owner_id))


async def run_socketio_bridge(notifier: ChangeNotifier = change_notifier):
    """Forward every published change to Socket.IO until cancelled."""
    subscription = notifier.subscribe()
    try:
        async for change in subscription:
            try:
                await emit_state_changed(change)
            except Exception as e:
                logger.error(f"Error emitting state change for {change.observation_id}: {e}")
                logger.exception(e)
    finally:
        subscription.close()
