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
Default calculator.

A calculation turns an ObservationSnapshot into the cached result:

    {
        "itc": {...} | None,          # signal to noise / exposure time
        "digest": {...} | None,       # execution time digest
        "workflow": {
            "state": "...",
            "valid_transitions": [...],
            "validation_errors": [{"code": "...", "messages": [...]}],
        },
    }

The exposure time calculator and the sequence digest are external services
plugged in as async callables. Either may raise TransientComputeError to ask
for a retry, or PermanentComputeError when the inputs are unusable.
"""

import copy
from typing import Awaitable, Callable, List, Optional

from common.exceptions import PermanentComputeError
from common.logger import logger
from obscalc.constants import (
    QA_CHARGEABLE,
    WORKFLOW_COMPLETED,
    WORKFLOW_DEFINED,
    WORKFLOW_INACTIVE,
    WORKFLOW_ONGOING,
    WORKFLOW_READY,
    WORKFLOW_UNDEFINED,
)
from obscalc.snapshot import ObservationSnapshot

ItcClient = Callable[[ObservationSnapshot], Awaitable[dict]]
DigestFunction = Callable[[ObservationSnapshot], Awaitable[dict]]

# Validation codes
CODE_CONFIGURATION = "configuration_error"
CODE_ITC = "itc_error"
CODE_CALL_FOR_PROPOSALS = "cfp_error"
CODE_CONFIGURATION_NOT_REQUESTED = "configuration_request_not_requested"
CODE_CONFIGURATION_PENDING = "configuration_request_pending"
CODE_CONFIGURATION_DENIED = "configuration_request_denied"

# Used whenever the workflow itself cannot be determined
UNDEFINED_WORKFLOW = {
    "state": WORKFLOW_UNDEFINED,
    "valid_transitions": [WORKFLOW_INACTIVE],
    "validation_errors": [],
}

VALID_TRANSITIONS = {
    WORKFLOW_UNDEFINED: [WORKFLOW_INACTIVE],
    WORKFLOW_DEFINED: [WORKFLOW_INACTIVE, WORKFLOW_READY],
    WORKFLOW_READY: [WORKFLOW_INACTIVE, WORKFLOW_DEFINED],
    WORKFLOW_ONGOING: [WORKFLOW_INACTIVE, WORKFLOW_COMPLETED],
    WORKFLOW_COMPLETED: [],
}

# Nominal acquisition overhead per instrument, in seconds
SETUP_SECONDS = {
    "GMOS_NORTH": 960.0,
    "GMOS_SOUTH": 960.0,
    "FLAMINGOS2": 1200.0,
}
DEFAULT_SETUP_SECONDS = 600.0


def _add_validation(validations: List[dict], code: str, message: str):
    for validation in validations:
        if validation["code"] == code:
            validation["messages"].append(message)
            return
    validations.append({"code": code, "messages": [message]})


def configuration_validations(snapshot: ObservationSnapshot) -> List[dict]:
    validations: List[dict] = []

    if not snapshot.targets:
        _add_validation(validations, CODE_CONFIGURATION, "Missing target")
    for target in snapshot.targets:
        if target.get("ra") is None or target.get("dec") is None:
            _add_validation(
                validations, CODE_CONFIGURATION, f"Missing coordinates for target {target['name']}"
            )

    mode = snapshot.observing_mode
    if mode is None:
        _add_validation(validations, CODE_CONFIGURATION, "Missing observing mode")
        return validations

    cfp = snapshot.call_for_proposals
    if cfp is not None and mode["instrument"] not in (cfp.get("instruments") or []):
        _add_validation(
            validations,
            CODE_CALL_FOR_PROPOSALS,
            f"Instrument {mode['instrument']} not available in this call for proposals",
        )

    if snapshot.program.get("proposal_status") == "accepted":
        matching = [
            request
            for request in snapshot.configuration_requests
            if request["instrument"] == mode["instrument"]
            and request["mode_type"] == mode["mode_type"]
        ]
        statuses = {request["status"] for request in matching}
        if not matching:
            _add_validation(
                validations,
                CODE_CONFIGURATION_NOT_REQUESTED,
                "Configuration approval not requested",
            )
        elif "approved" in statuses:
            pass
        elif statuses == {"denied"}:
            _add_validation(
                validations, CODE_CONFIGURATION_DENIED, "Configuration approval denied"
            )
        else:
            _add_validation(
                validations, CODE_CONFIGURATION_PENDING, "Configuration approval pending"
            )

    return validations


def compute_workflow(snapshot: ObservationSnapshot, validations: List[dict]) -> dict:
    observation = snapshot.observation
    user_state = observation.get("workflow_user_state")

    if validations:
        natural_state = WORKFLOW_UNDEFINED
    elif snapshot.dataset_qa_states:
        natural_state = WORKFLOW_COMPLETED if user_state == WORKFLOW_COMPLETED else WORKFLOW_ONGOING
    elif user_state == WORKFLOW_READY:
        natural_state = WORKFLOW_READY
    else:
        natural_state = WORKFLOW_DEFINED

    if user_state == WORKFLOW_INACTIVE:
        return {
            "state": WORKFLOW_INACTIVE,
            "valid_transitions": [natural_state],
            "validation_errors": validations,
        }

    return {
        "state": natural_state,
        "valid_transitions": list(VALID_TRANSITIONS[natural_state]),
        "validation_errors": validations,
    }


async def basic_digest(snapshot: ObservationSnapshot) -> Optional[dict]:
    """
    Planned time digest from the observation's nominal duration. Datasets
    that failed QA are not charged.
    """
    duration = snapshot.observation.get("duration_seconds")
    if duration is None:
        return None

    instrument = snapshot.instrument
    setup = SETUP_SECONDS.get(instrument, DEFAULT_SETUP_SECONDS)
    chargeable = sum(1 for qa in snapshot.dataset_qa_states if qa in QA_CHARGEABLE)
    return {
        "setup_seconds": setup,
        "science_seconds": float(duration),
        "total_seconds": setup + float(duration),
        "dataset_count": len(snapshot.dataset_qa_states),
        "chargeable_dataset_count": chargeable,
    }


class ObservationCalculator:
    """
    Computes the cached result for an observation snapshot.

    Args:
        itc_client: async callable returning signal to noise results, or None
                    to leave the "itc" section empty
        digest_function: async callable returning the execution digest
    """

    def __init__(
        self,
        itc_client: Optional[ItcClient] = None,
        digest_function: Optional[DigestFunction] = basic_digest,
    ):
        self.itc_client = itc_client
        self.digest_function = digest_function

    async def __call__(self, snapshot: ObservationSnapshot) -> dict:
        try:
            validations = configuration_validations(snapshot)
        except Exception as e:
            logger.error(f"Error validating {snapshot.observation_id}: {e}")
            logger.exception(e)
            validations = None

        itc = None
        if self.itc_client is not None and snapshot.observing_mode is not None and snapshot.targets:
            try:
                itc = await self.itc_client(snapshot)
            except PermanentComputeError as e:
                # Bad ITC inputs are reported through the workflow.
                if validations is not None:
                    _add_validation(validations, CODE_ITC, e.message)

        digest = None
        if self.digest_function is not None:
            digest = await self.digest_function(snapshot)

        if validations is None:
            workflow = copy.deepcopy(UNDEFINED_WORKFLOW)
        else:
            try:
                workflow = compute_workflow(snapshot, validations)
            except Exception as e:
                logger.error(f"Error computing workflow for {snapshot.observation_id}: {e}")
                logger.exception(e)
                workflow = copy.deepcopy(UNDEFINED_WORKFLOW)

        return {"itc": itc, "digest": digest, "workflow": workflow}
