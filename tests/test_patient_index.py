import json

import pytest
import requests

from portal_scraper.services.patient_index import PatientIndexCache

from conftest import reply

ROSTER = [
    {"PatientId": 3, "FirstName": "Cy", "LastName": "Doe"},
    {"PatientId": 1, "FirstName": "Ann", "LastName": "Lee"},
    {"PatientId": 2, "FirstName": "Bob", "LastName": "Doe"},
    {"PatientId": 4, "FirstName": "", "LastName": ""},
]


class TestPatientIndexCache:
    @pytest.mark.asyncio
    async def test_sorted_by_last_then_first(self, portal, make_context):
        portal.on("GET", "/Patient/GetAllPatients", reply(body=json.dumps(ROSTER)))

        patients = await PatientIndexCache().get(make_context())

        assert [p.search_name for p in patients] == ["Doe, Bob", "Doe, Cy", "Lee, Ann"]
        assert patients[0].patient_id == "2"

    @pytest.mark.asyncio
    async def test_loaded_once_per_run(self, portal, make_context):
        portal.on("GET", "/Patient/GetAllPatients", reply(body=json.dumps(ROSTER)))
        cache = PatientIndexCache()
        ctx = make_context()

        await cache.get(ctx)
        await cache.get(ctx)

        assert portal.paths().count("/Patient/GetAllPatients") == 1

    @pytest.mark.asyncio
    async def test_test_filters(self, portal, make_context):
        portal.on("GET", "/Patient/GetAllPatients", reply(body=json.dumps(ROSTER)))

        by_name = await PatientIndexCache(test_patient_name="ann lee").get(make_context())
        limited = await PatientIndexCache(test_limit=2).get(make_context())

        assert [p.search_name for p in by_name] == ["Lee, Ann"]
        assert len(limited) == 2

    @pytest.mark.asyncio
    async def test_falls_back_to_csv_export(self, portal, make_context):
        portal.on("GET", "/Reports/ExportPatientList", reply(
            body="Patient Id,First Name,Last Name,Phone\n10,Eve,Young,555-0100\n11,Al,Young,555-0101\n"
        ))
        cache = PatientIndexCache()

        patients = await cache.get(make_context())

        assert [p.patient_id for p in patients] == ["11", "10"]
        assert cache.source == "patient_export"

    @pytest.mark.asyncio
    async def test_network_error_moves_on_to_next_roster(self, portal, make_context):
        portal.on("GET", "/Patient/GetAllPatients", requests.exceptions.ConnectionError("reset"))
        portal.on("GET", "/Patient/GetPatientList", reply(body=json.dumps([{"PatientId": 9, "FirstName": "Eve", "LastName": "Young"}])))
        ctx = make_context()
        cache = PatientIndexCache()

        patients = await cache.get(ctx)

        assert [p.patient_id for p in patients] == ["9"]
        assert cache.source == "/Patient/GetPatientList"
        assert any("TransientNetworkError" in line for line in ctx.log.lines)

    @pytest.mark.asyncio
    async def test_roster_errors_fall_back_to_export(self, portal, make_context):
        portal.on("GET", "/Patient/GetAllPatients", requests.exceptions.ConnectionError("reset"))
        portal.on("GET", "/Patient/GetPatientList", reply(body="<oops"))
        portal.on("GET", "/Reports/ExportPatientList", reply(
            body="Patient Id,First Name,Last Name,Phone\n10,Eve,Young,555-0100\n"
        ))
        cache = PatientIndexCache()

        patients = await cache.get(make_context())

        assert [p.patient_id for p in patients] == ["10"]
        assert cache.source == "patient_export"

    @pytest.mark.asyncio
    async def test_export_error_gives_empty_index(self, portal, make_context):
        portal.on("GET", "/Reports/ExportPatientList", requests.exceptions.ConnectionError("reset"))

        assert await PatientIndexCache().get(make_context()) == []
