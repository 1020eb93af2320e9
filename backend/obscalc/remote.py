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
HTTP clients for the remote services the calculations call: the exposure
time calculator and the telluric star catalog.

Server errors, throttling and transport problems raise TransientComputeError
so the work is retried. Other client errors raise PermanentComputeError.
"""

from typing import List, Optional

import httpx

from common.exceptions import PermanentComputeError, TransientComputeError
from common.logger import logger
from obscalc.snapshot import ObservationSnapshot
from obscalc.telluric import TelluricSearchInput, TelluricStar


def _raise_for_status(service: str, response: httpx.Response):
    status = response.status_code
    if status < 400:
        return

    detail = response.text[:200]
    if status >= 500 or status == 429:
        logger.warning(f"{service} unavailable: {status} - {detail}")
        raise TransientComputeError(f"{service} unavailable ({status})")

    logger.info(f"{service} rejected the request: {status} - {detail}")
    raise PermanentComputeError(f"{service} rejected the request ({status}): {detail}")


class _RemoteService:
    service_name = "remote service"

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _post(self, path: str, payload: dict):
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(path, json=payload)
        except httpx.TimeoutException as e:
            raise TransientComputeError(f"{self.service_name} timed out") from e
        except httpx.TransportError as e:
            raise TransientComputeError(f"{self.service_name} unreachable: {e}") from e

        _raise_for_status(self.service_name, response)
        try:
            return response.json()
        except ValueError as e:
            raise TransientComputeError(f"{self.service_name} returned invalid JSON") from e


class ItcHttpClient(_RemoteService):
    """Signal to noise for an observation's first target in its observing mode."""

    service_name = "ITC"

    async def __call__(self, snapshot: ObservationSnapshot) -> dict:
        target = snapshot.targets[0]
        payload = {
            "observation_id": snapshot.observation_id,
            "target": {"name": target["name"], "ra": target["ra"], "dec": target["dec"]},
            "mode": {
                "instrument": snapshot.observing_mode["instrument"],
                "mode_type": snapshot.observing_mode["mode_type"],
                "params": snapshot.observing_mode.get("params") or {},
            },
            "duration_seconds": snapshot.observation.get("duration_seconds"),
        }
        return await self._post("/itc", payload)


class TelluricCatalogHttpClient(_RemoteService):
    """Candidate telluric standards ordered best first."""

    service_name = "Telluric catalog"

    async def __call__(self, search: TelluricSearchInput) -> List[TelluricStar]:
        payload = {
            "ra": search.ra,
            "dec": search.dec,
            "duration_seconds": search.duration_seconds,
            "telluric_type": search.telluric_type,
            "brightest": search.brightest,
        }
        data = await self._post("/telluric/search", payload)

        try:
            return [
                TelluricStar(hip=int(star["hip"]), ra=float(star["ra"]), dec=float(star["dec"]))
                for star in data.get("stars", [])
            ]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise TransientComputeError(f"{self.service_name} returned an unexpected payload") from e
