import pytest

from portal_scraper.services.errors import ParseError
from portal_scraper.services.page_parser import PortalPageParser
from portal_scraper.services.transforms import (
    is_tabular_payload,
    json_rows,
    json_total,
    normalize_portal_date,
    normalize_row_dates,
    parse_delimited,
    pick,
)

from conftest import HOME_PAGE, LOGIN_PAGE

SCHEDULER_PAGE = """
<html><body>
<form id="schedulerForm" action="/User/Scheduler/Save" method="post"></form>
<select id="ddlProvider">
  <option value="0">All Providers</option>
  <option value="12">Dr. Adams</option>
  <option value="15">Dr. Baker</option>
</select>
<input type="text" id="txtStartDate" name="StartDate" />
<script>
  $.ajax({ url: '/User/Scheduler/GetAppointments', type: 'GET' });
  var lookup = "/Patient/SearchPatient";
  var css = "/Content/site.css";
</script>
</body></html>
"""


class TestPortalPageParser:
    def setup_method(self):
        self.parser = PortalPageParser()

    def test_antiforgery_token(self):
        assert self.parser.antiforgery_token(LOGIN_PAGE) == "csrf-token-123"
        assert self.parser.antiforgery_token("<html></html>") is None

    def test_select_options_in_order(self):
        options = self.parser.select_options(SCHEDULER_PAGE, "ddlProvider")
        assert options == [("0", "All Providers"), ("12", "Dr. Adams"), ("15", "Dr. Baker")]
        assert self.parser.select_options(SCHEDULER_PAGE, "missing") == []

    def test_practice_id_from_hidden_field_or_script(self):
        assert self.parser.practice_id(HOME_PAGE) == "4711"
        assert self.parser.practice_id("<script>var practiceId = '88';</script>") == "88"
        assert self.parser.practice_id("<html></html>") is None

    def test_is_login_page(self):
        assert self.parser.is_login_page(LOGIN_PAGE)
        assert not self.parser.is_login_page(HOME_PAGE)

    def test_page_structure(self):
        structure = self.parser.page_structure(SCHEDULER_PAGE)
        assert 'FORM: <form id="schedulerForm"' in structure
        assert "SELECT#ddlProvider: 0=All Providers | 12=Dr. Adams | 15=Dr. Baker" in structure
        assert "INPUT:" in structure
        assert 'AJAX: $.ajax("/User/Scheduler/GetAppointments")' in structure
        assert "/Patient/SearchPatient" in structure
        assert "site.css" not in structure


class TestTransforms:
    def test_tabular_payload_rules(self):
        csv_body = "PatientId,FirstName,LastName\n" + "1,Ann,Lee\n" * 5
        assert is_tabular_payload(csv_body)
        assert not is_tabular_payload("")
        assert not is_tabular_payload("   ")
        assert not is_tabular_payload("a,b\n1,2")
        assert not is_tabular_payload("<!DOCTYPE html><html>" + "x" * 100)

    def test_parse_delimited_comma_and_tab(self):
        assert parse_delimited("\ufeffId,Name\n1,Ann\n\n2,Bob\n") == [
            {"Id": "1", "Name": "Ann"},
            {"Id": "2", "Name": "Bob"},
        ]
        assert parse_delimited("Id\tName\n1\tAnn, Jr\n") == [{"Id": "1", "Name": "Ann, Jr"}]

    def test_json_rows_unwraps_containers(self):
        assert json_rows('[{"a": 1}, 2]') == [{"a": 1}]
        assert json_rows('{"Data": [{"a": 1}]}') == [{"a": 1}]
        assert json_rows('{"Result": {"rows": [{"a": 2}]}}') == [{"a": 2}]
        assert json_rows('{"unrelated": 1}') == []
        with pytest.raises(ParseError):
            json_rows("<html>not json</html>")

    def test_json_total(self):
        assert json_total({"TotalCount": 250}) == 250
        assert json_total({"recordsTotal": "12"}) == 12
        assert json_total([]) is None

    def test_portal_date_normalisation(self):
        assert normalize_portal_date("/Date(1700000000000)/") == "2023-11-14"
        assert normalize_portal_date("/Date(0)/") == "1970-01-01"
        # Offset is applied before taking the calendar date
        assert normalize_portal_date("/Date(1700006400000-0500)/") == "2023-11-14"
        assert normalize_portal_date("/Date(1700006400000+0500)/") == "2023-11-15"

    @pytest.mark.parametrize("value", [
        "/Date(1700000000000)/",
        "/Date(1699999999999-0330)/",
        "2024-02-29",
        "",
        None,
        42,
    ])
    def test_normalisation_is_idempotent(self, value):
        once = normalize_portal_date(value)
        assert normalize_portal_date(once) == once

    def test_row_dates_normalised_on_every_field(self):
        row = {"Billed": "/Date(0)/", "Paid": "/Date(86400000)/", "Amount": 10}
        assert normalize_row_dates(row) == {"Billed": "1970-01-01", "Paid": "1970-01-02", "Amount": 10}

    def test_pick_is_case_and_separator_insensitive(self):
        row = {"patient_id": "7", "FIRST NAME": "Ann", "Email": ""}
        assert pick(row, "PatientId") == "7"
        assert pick(row, "FirstName") == "Ann"
        assert pick(row, "Email", "EmailAddress", default="n/a") == "n/a"
