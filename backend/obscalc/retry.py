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

import asyncio
from dataclasses import dataclass
from datetime import timedelta

from common.exceptions import PermanentComputeError, TransientComputeError


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    A failure with ``failure_count`` earlier failures is retried while
    ``failure_count < max_retries``, after ``base_delay * 2**failure_count``
    seconds, never more than ``max_delay``.
    """

    max_retries: int
    base_delay: float
    max_delay: float

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if self.base_delay <= 0 or self.max_delay < self.base_delay:
            raise ValueError("retry delays must satisfy 0 < base_delay <= max_delay")

    def should_retry(self, failure_count: int) -> bool:
        return failure_count < self.max_retries

    def delay(self, failure_count: int) -> timedelta:
        # cap the exponent first so large counts cannot overflow
        exponent = min(max(failure_count, 0), 32)
        return timedelta(seconds=min(self.base_delay * (2**exponent), self.max_delay))

    @classmethod
    def for_obscalc(cls, args) -> "RetryPolicy":
        return cls(args.max_retries, args.retry_base_delay, args.retry_max_delay)

    @classmethod
    def for_telluric(cls, args) -> "RetryPolicy":
        return cls(
            args.telluric_max_retries,
            args.telluric_retry_base_delay,
            args.telluric_retry_max_delay,
        )


def is_transient(error: BaseException) -> bool:
    """
    Classify a compute failure. Only an explicit PermanentComputeError is
    terminal; timeouts, connection problems and unexpected errors are retried.
    """
    return not isinstance(error, PermanentComputeError)


def describe_failure(error: BaseException) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return "Calculation timed out"
    if isinstance(error, (TransientComputeError, PermanentComputeError)):
        return error.message
    return str(error) or error.__class__.__name__
