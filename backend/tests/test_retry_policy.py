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
Tests for obscalc/retry.py.
"""

import asyncio
from argparse import Namespace
from datetime import timedelta

import pytest

from common.exceptions import PermanentComputeError, TransientComputeError
from obscalc.retry import RetryPolicy, describe_failure, is_transient


class TestRetryPolicy:
    def test_delay_doubles_until_capped(self):
        policy = RetryPolicy(max_retries=5, base_delay=30.0, max_delay=100.0)

        assert policy.delay(0) == timedelta(seconds=30)
        assert policy.delay(1) == timedelta(seconds=60)
        assert policy.delay(2) == timedelta(seconds=100)
        assert policy.delay(500) == timedelta(seconds=100)

    def test_should_retry_below_limit(self):
        policy = RetryPolicy(max_retries=2, base_delay=1.0, max_delay=1.0)

        assert policy.should_retry(0) is True
        assert policy.should_retry(1) is True
        assert policy.should_retry(2) is False

    @pytest.mark.parametrize(
        "max_retries, base_delay, max_delay",
        [(-1, 1.0, 2.0), (1, 0.0, 2.0), (1, 5.0, 2.0)],
    )
    def test_rejects_invalid_settings(self, max_retries, base_delay, max_delay):
        with pytest.raises(ValueError):
            RetryPolicy(max_retries, base_delay, max_delay)

    def test_built_from_arguments(self):
        args = Namespace(
            max_retries=3,
            retry_base_delay=10.0,
            retry_max_delay=40.0,
            telluric_max_retries=1,
            telluric_retry_base_delay=5.0,
            telluric_retry_max_delay=5.0,
        )

        assert RetryPolicy.for_obscalc(args) == RetryPolicy(3, 10.0, 40.0)
        assert RetryPolicy.for_telluric(args) == RetryPolicy(1, 5.0, 5.0)


class TestFailureClassification:
    def test_only_permanent_errors_are_terminal(self):
        assert is_transient(TransientComputeError("down")) is True
        assert is_transient(asyncio.TimeoutError()) is True
        assert is_transient(RuntimeError("surprise")) is True
        assert is_transient(PermanentComputeError("bad input")) is False

    def test_describe_failure(self):
        assert describe_failure(asyncio.TimeoutError()) == "Calculation timed out"
        assert describe_failure(PermanentComputeError("Missing target")) == "Missing target"
        assert describe_failure(RuntimeError("boom")) == "boom"
        assert describe_failure(KeyError()) == "KeyError"
