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

"""Constants for the calculation cache."""

# Edit types carried by change events
EDIT_CREATED = "created"
EDIT_UPDATED = "updated"
EDIT_DELETED = "deleted"

# Record kinds carried by change events
KIND_OBSCALC = "obscalc"
KIND_TELLURIC = "telluric"

# Socket.IO event and room naming
STATE_CHANGED_EVENT = "obscalc-state-changed"
PROGRAM_ROOM_PREFIX = "program:"

# Default size of a subscriber's event queue before old events are dropped
DEFAULT_SUBSCRIPTION_QUEUE_SIZE = 256

# Dataset QA states. Moving between the two groups changes what the
# observation's execution digest looks like.
QA_PASS = "pass"
QA_USABLE = "usable"
QA_FAIL = "fail"
QA_CHARGEABLE = (None, QA_PASS)
QA_NOT_CHARGEABLE = (QA_FAIL, QA_USABLE)

# Workflow states
WORKFLOW_UNDEFINED = "undefined"
WORKFLOW_INACTIVE = "inactive"
WORKFLOW_DEFINED = "defined"
WORKFLOW_READY = "ready"
WORKFLOW_ONGOING = "ongoing"
WORKFLOW_COMPLETED = "completed"

# Observation calibration role for telluric standards
CALIBRATION_ROLE_TELLURIC = "telluric"

# Prefix of calibration targets created for a resolved telluric star
TELLURIC_TARGET_PREFIX = "HIP "
