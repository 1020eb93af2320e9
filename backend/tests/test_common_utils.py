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
Tests for common/utils.py utility functions.
"""

import json
import uuid
from datetime import UTC, datetime, timedelta, timezone

from common.utils import ModelEncoder, ensure_utc, serialize_object, utcnow
from db.models import CalculationState, Programs


class TestModelEncoder:
    """Test cases for the JSON encoder used on replies."""

    def test_datetime_and_timedelta(self):
        value = {"at": datetime(2026, 3, 1, 12, 0, tzinfo=UTC), "delay": timedelta(minutes=2)}

        encoded = json.loads(json.dumps(value, cls=ModelEncoder))

        assert encoded == {"at": "2026-03-01T12:00:00+00:00", "delay": 120.0}

    def test_uuid(self):
        value = uuid.UUID("550e8400-e29b-41d4-a716-446655440000")

        assert json.dumps(value, cls=ModelEncoder) == '"550e8400-e29b-41d4-a716-446655440000"'

    def test_model_rows_become_dicts(self):
        program = Programs(id="p-1", name="Survey", proposal_status="accepted", cfp_id=None)

        encoded = serialize_object(program)

        assert encoded["id"] == "p-1"
        assert encoded["proposal_status"] == "accepted"
        assert encoded["cfp_id"] is None


class TestSerializeObject:
    def test_enums_become_values(self):
        assert serialize_object({"state": CalculationState.RETRY}) == {"state": "retry"}

    def test_nested_structures(self):
        value = {"ids": ("a", "b"), "inner": {"when": datetime(2026, 1, 1, tzinfo=UTC)}}

        assert serialize_object(value) == {
            "ids": ["a", "b"],
            "inner": {"when": "2026-01-01T00:00:00+00:00"},
        }


class TestEnsureUtc:
    def test_none(self):
        assert ensure_utc(None) is None

    def test_naive_is_taken_as_utc(self):
        assert ensure_utc(datetime(2026, 1, 1, 10, 0)) == datetime(2026, 1, 1, 10, 0, tzinfo=UTC)

    def test_aware_is_converted(self):
        local = datetime(2026, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))

        converted = ensure_utc(local)

        assert converted.tzinfo is UTC
        assert converted.hour == 10

    def test_utcnow_is_aware(self):
        assert utcnow().tzinfo is UTC
