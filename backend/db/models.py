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


from datetime import timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    TypeDecorator,
)
from sqlalchemy.orm import declarative_base

from common.utils import utcnow

# Creates a base class for declarative models using SQLAlchemy.
Base = declarative_base()


class AwareDateTime(TypeDecorator):
    """
    A type that ensures timezone-aware datetimes by
    attaching UTC if the datetime is naive.
    """

    impl = DateTime(timezone=False)  # SQLite doesn't honor tz anyway
    cache_ok = True

    def process_result_value(self, value, dialect):
        """
        When reading from DB, if it's naive, attach UTC.
        """
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def process_bind_param(self, value, dialect):
        """
        When writing to DB, store everything in UTC so that string
        comparisons in SQLite order correctly.
        """
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class CalculationState(str, PyEnum):
    PENDING = "pending"
    RETRY = "retry"
    CALCULATING = "calculating"
    READY = "ready"
    FAILED = "failed"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


def calculation_state_column(**kwargs):
    return Column(
        Enum(
            CalculationState,
            name="calculation_state",
            values_callable=_enum_values,
            native_enum=False,
            validate_strings=True,
        ),
        **kwargs,
    )


# ----------------------------------------------------------------------------
# Upstream entities. Only the columns the calculation reads are modelled here.
# ----------------------------------------------------------------------------


class CallsForProposals(Base):
    __tablename__ = "calls_for_proposals"
    id = Column(String, primary_key=True, nullable=False)
    title = Column(String, nullable=False)
    instruments = Column(JSON, nullable=False, default=list)
    active_start = Column(AwareDateTime, nullable=True)
    active_end = Column(AwareDateTime, nullable=True)
    added = Column(AwareDateTime, nullable=False, default=utcnow)
    updated = Column(AwareDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Programs(Base):
    __tablename__ = "programs"
    id = Column(String, primary_key=True, nullable=False)
    name = Column(String, nullable=False)
    proposal_status = Column(String, nullable=False, default="not_submitted")
    cfp_id = Column(
        String, ForeignKey("calls_for_proposals.id", ondelete="SET NULL"), nullable=True
    )
    added = Column(AwareDateTime, nullable=False, default=utcnow)
    updated = Column(AwareDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Observations(Base):
    __tablename__ = "observations"
    id = Column(String, primary_key=True, nullable=False)
    program_id = Column(String, ForeignKey("programs.id", ondelete="CASCADE"), nullable=False)
    title = Column(String, nullable=True)
    workflow_user_state = Column(String, nullable=True)
    calibration_role = Column(String, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    added = Column(AwareDateTime, nullable=False, default=utcnow)
    updated = Column(AwareDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Targets(Base):
    __tablename__ = "targets"
    id = Column(String, primary_key=True, nullable=False)
    program_id = Column(String, ForeignKey("programs.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)
    ra = Column(Float, nullable=True)
    dec = Column(Float, nullable=True)
    existence = Column(String, nullable=False, default="present")
    calibration_role = Column(String, nullable=True)
    added = Column(AwareDateTime, nullable=False, default=utcnow)
    updated = Column(AwareDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class AsterismTargets(Base):
    __tablename__ = "asterism_targets"
    observation_id = Column(
        String, ForeignKey("observations.id", ondelete="CASCADE"), primary_key=True
    )
    target_id = Column(String, ForeignKey("targets.id", ondelete="CASCADE"), primary_key=True)
    program_id = Column(String, nullable=False)


class ObservingModes(Base):
    __tablename__ = "observing_modes"
    observation_id = Column(
        String, ForeignKey("observations.id", ondelete="CASCADE"), primary_key=True
    )
    instrument = Column(String, nullable=False)
    mode_type = Column(String, nullable=False)
    params = Column(JSON, nullable=False, default=dict)
    updated = Column(AwareDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class ConfigurationRequests(Base):
    __tablename__ = "configuration_requests"
    id = Column(String, primary_key=True, nullable=False)
    program_id = Column(String, ForeignKey("programs.id", ondelete="CASCADE"), nullable=False)
    instrument = Column(String, nullable=False)
    mode_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default="requested")
    added = Column(AwareDateTime, nullable=False, default=utcnow)
    updated = Column(AwareDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Datasets(Base):
    __tablename__ = "datasets"
    id = Column(String, primary_key=True, nullable=False)
    observation_id = Column(
        String, ForeignKey("observations.id", ondelete="CASCADE"), nullable=False
    )
    filename = Column(String, nullable=False)
    qa_state = Column(String, nullable=True)
    added = Column(AwareDateTime, nullable=False, default=utcnow)
    updated = Column(AwareDateTime, nullable=False, default=utcnow, onupdate=utcnow)


# ----------------------------------------------------------------------------
# Derived results
# ----------------------------------------------------------------------------


class ObsCalc(Base):
    __tablename__ = "obscalc"
    __table_args__ = (
        CheckConstraint("failure_count >= 0", name="ck_obscalc_failure_count"),
        # retry bookkeeping only applies to 'retry' and 'calculating'
        CheckConstraint(
            "state IN ('retry', 'calculating') OR (retry_at IS NULL AND failure_count = 0)",
            name="ck_obscalc_retry_fields",
        ),
        CheckConstraint(
            "state != 'retry' OR retry_at IS NOT NULL", name="ck_obscalc_retry_at_defined"
        ),
    )
    observation_id = Column(
        String, ForeignKey("observations.id", ondelete="CASCADE"), primary_key=True
    )
    program_id = Column(String, nullable=False, index=True)
    state = calculation_state_column(nullable=False, default=CalculationState.PENDING)
    last_invalidation = Column(AwareDateTime, nullable=False, default=utcnow, index=True)
    last_update = Column(AwareDateTime, nullable=True)
    retry_at = Column(AwareDateTime, nullable=True)
    failure_count = Column(Integer, nullable=False, default=0)
    result = Column(JSON, nullable=True)
    error_message = Column(String, nullable=True)


class TelluricResolutions(Base):
    __tablename__ = "telluric_resolutions"
    __table_args__ = (
        CheckConstraint("failure_count >= 0", name="ck_telluric_failure_count"),
        CheckConstraint(
            "state != 'retry' OR retry_at IS NOT NULL", name="ck_telluric_retry_at_defined"
        ),
    )
    observation_id = Column(
        String, ForeignKey("observations.id", ondelete="CASCADE"), primary_key=True
    )
    program_id = Column(String, nullable=False)
    science_observation_id = Column(
        String, ForeignKey("observations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    state = calculation_state_column(nullable=False, default=CalculationState.PENDING)
    last_invalidation = Column(AwareDateTime, nullable=False, default=utcnow)
    last_update = Column(AwareDateTime, nullable=True)
    retry_at = Column(AwareDateTime, nullable=True)
    failure_count = Column(Integer, nullable=False, default=0)
    resolved_target_id = Column(
        String, ForeignKey("targets.id", ondelete="SET NULL"), nullable=True
    )
    error_message = Column(String, nullable=True)


class InvalidationSweeps(Base):
    __tablename__ = "invalidation_sweeps"
    id = Column(Integer, primary_key=True, autoincrement=True)
    program_id = Column(String, nullable=True, index=True)
    cfp_id = Column(String, nullable=True, index=True)
    change_time = Column(AwareDateTime, nullable=False)
    added = Column(AwareDateTime, nullable=False, default=utcnow)
    processed_at = Column(AwareDateTime, nullable=True)
