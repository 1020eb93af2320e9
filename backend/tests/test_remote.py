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
Tests for the HTTP clients of the calculator and catalog services.
"""

import json

import httpx
import pytest

from common.exceptions import PermanentComputeError, TransientComputeError
from obscalc.remote import ItcHttpClient, TelluricCatalogHttpClient
from obscalc.snapshot import ObservationSnapshot
from obscalc.telluric import TelluricSearchInput, TelluricStar

SNAPSHOT = ObservationSnapshot(
    observation={"id": "o-1", "program_id": "p-1", "duration_seconds": 1200.0},
    program={"id": "p-1"},
    targets=({"id": "t-1", "name": "NGC 1000", "ra": 150.0, "dec": -20.0},),
    observing_mode={"instrument": "GMOS_NORTH", "mode_type": "long_slit", "params": {}},
)


def _transport(handler):
    return httpx.MockTransport(handler)


@pytest.mark.asyncio
class TestItcHttpClient:
    async def test_posts_snapshot(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"signal_to_noise": 42.0})

        client = ItcHttpClient("http://itc.local/", transport=_transport(handler))

        assert await client(SNAPSHOT) == {"signal_to_noise": 42.0}
        assert seen["path"] == "/itc"
        assert seen["body"]["target"]["name"] == "NGC 1000"
        assert seen["body"]["mode"]["instrument"] == "GMOS_NORTH"
        assert seen["body"]["duration_seconds"] == 1200.0

    @pytest.mark.parametrize("status", [500, 503, 429])
    async def test_server_trouble_is_transient(self, status):
        client = ItcHttpClient(
            "http://itc.local", transport=_transport(lambda request: httpx.Response(status))
        )

        with pytest.raises(TransientComputeError):
            await client(SNAPSHOT)

    async def test_rejection_is_permanent(self):
        client = ItcHttpClient(
            "http://itc.local",
            transport=_transport(lambda request: httpx.Response(422, text="bad mode")),
        )

        with pytest.raises(PermanentComputeError) as excinfo:
            await client(SNAPSHOT)
        assert "bad mode" in str(excinfo.value)

    async def test_connection_failure_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = ItcHttpClient("http://itc.local", transport=_transport(handler))

        with pytest.raises(TransientComputeError):
            await client(SNAPSHOT)

    async def test_invalid_json_is_transient(self):
        client = ItcHttpClient(
            "http://itc.local",
            transport=_transport(lambda request: httpx.Response(200, text="<html>")),
        )

        with pytest.raises(TransientComputeError):
            await client(SNAPSHOT)


@pytest.mark.asyncio
class TestTelluricCatalogHttpClient:
    async def test_parses_stars(self):
        def handler(request):
            assert request.url.path == "/telluric/search"
            return httpx.Response(
                200, json={"stars": [{"hip": "4242", "ra": 151.0, "dec": -21.5}]}
            )

        client = TelluricCatalogHttpClient("http://catalog.local", transport=_transport(handler))

        stars = await client(TelluricSearchInput(ra=150.0, dec=-20.0, duration_seconds=1800.0))

        assert stars == [TelluricStar(hip=4242, ra=151.0, dec=-21.5)]

    async def test_malformed_star_list(self):
        client = TelluricCatalogHttpClient(
            "http://catalog.local",
            transport=_transport(lambda request: httpx.Response(200, json={"stars": [{"ra": 1}]})),
        )

        with pytest.raises(TransientComputeError):
            await client(TelluricSearchInput(ra=150.0, dec=-20.0, duration_seconds=1800.0))
