# Copyright (c) 2024 Efstratios Goudelis
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


import json
import uuid
from datetime import UTC, date, datetime, timedelta
from enum import Enum
from typing import Optional


class ModelEncoder(json.JSONEncoder):
    def default(self, obj):

        if isinstance(obj, (date, datetime)):
            return obj.isoformat()

        if isinstance(obj, timedelta):
            return obj.total_seconds()

        if isinstance(obj, uuid.UUID):
            return str(obj)

        if isinstance(obj, Enum):
            return obj.value

        # Attempt to convert SQLAlchemy model objects
        # by reading their columns
        try:
            return {column.name: getattr(obj, column.name) for column in obj.__table__.columns}
        except AttributeError:
            pass

        return super().default(obj)


def serialize_object(obj):
    """
    Serializes a Python object into a JSON-compatible format and then
    deserializes it back to a Python object, so that datetimes, enums and
    model rows come back as plain strings, numbers, lists and dicts.

    :param obj: The Python object to be serialized and deserialized.
    :return: The JSON-compatible reconstruction of ``obj``.
    """
    return json.loads(json.dumps(obj, cls=ModelEncoder))


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
