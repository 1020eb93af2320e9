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

"""Read-only view of everything a calculation depends on."""

from dataclasses import dataclass, field
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from common.exceptions import PermanentComputeError
from common.utils import serialize_object
from db.models import (
    AsterismTargets,
    CallsForProposals,
    ConfigurationRequests,
    Datasets,
    Observations,
    ObservingModes,
    Programs,
    Targets,
)


@dataclass(frozen=True)
class ObservationSnapshot:
    observation: dict
    program: dict
    call_for_proposals: Optional[dict] = None
    targets: Tuple[dict, ...] = ()
    observing_mode: Optional[dict] = None
    configuration_requests: Tuple[dict, ...] = ()
    dataset_qa_states: Tuple[Optional[str], ...] = field(default_factory=tuple)

    @property
    def observation_id(self) -> str:
        return self.observation["id"]

    @property
    def program_id(self) -> str:
        return self.program["id"]

    @property
    def instrument(self) -> Optional[str]:
        if self.observing_mode is None:
            return None
        return self.observing_mode["instrument"]


async def load_snapshot(session: AsyncSession, observation_id: str) -> ObservationSnapshot:
    """
    Read the observation and its upstream inputs. Raises PermanentComputeError
    if the observation (or its program) no longer exists.
    """
    observation = (
        await session.execute(select(Observations).filter(Observations.id == observation_id))
    ).scalar_one_or_none()
    if observation is None:
        raise PermanentComputeError(f"Observation {observation_id} not found")

    program = (
        await session.execute(select(Programs).filter(Programs.id == observation.program_id))
    ).scalar_one_or_none()
    if program is None:
        raise PermanentComputeError(f"Program {observation.program_id} not found")

    call_for_proposals = None
    if program.cfp_id is not None:
        call_for_proposals = (
            await session.execute(
                select(CallsForProposals).filter(CallsForProposals.id == program.cfp_id)
            )
        ).scalar_one_or_none()

    targets = (
        await session.execute(
            select(Targets)
            .join(AsterismTargets, AsterismTargets.target_id == Targets.id)
            .filter(AsterismTargets.observation_id == observation_id)
            .filter(Targets.existence == "present")
            .order_by(Targets.id)
        )
    ).scalars().all()

    observing_mode = (
        await session.execute(
            select(ObservingModes).filter(ObservingModes.observation_id == observation_id)
        )
    ).scalar_one_or_none()

    configuration_requests = (
        await session.execute(
            select(ConfigurationRequests)
            .filter(ConfigurationRequests.program_id == program.id)
            .order_by(ConfigurationRequests.id)
        )
    ).scalars().all()

    qa_states = (
        await session.execute(
            select(Datasets.qa_state)
            .filter(Datasets.observation_id == observation_id)
            .order_by(Datasets.id)
        )
    ).scalars().all()

    return ObservationSnapshot(
        observation=serialize_object(observation),
        program=serialize_object(program),
        call_for_proposals=serialize_object(call_for_proposals) if call_for_proposals else None,
        targets=tuple(serialize_object(t) for t in targets),
        observing_mode=serialize_object(observing_mode) if observing_mode else None,
        configuration_requests=tuple(serialize_object(r) for r in configuration_requests),
        dataset_qa_states=tuple(qa_states),
    )
