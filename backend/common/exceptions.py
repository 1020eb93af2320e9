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


class StoreUnavailableError(Exception):

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message  # Additional storage for convenience

    def __str__(self):
        base_str = f"StoreUnavailableError: {self.message}"
        return base_str


class TransientComputeError(Exception):
    """A calculation failed for a reason that may go away on its own (remote outage, timeout)."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self):
        base_str = f"TransientComputeError: {self.message}"
        return base_str


class PermanentComputeError(Exception):
    """A calculation rejected its inputs; only a new upstream change can fix it."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self):
        base_str = f"PermanentComputeError: {self.message}"
        return base_str
