"""
Tests for RecordsStoreClient (Airtable).

Covers create/patch requests, offset pagination and error mapping.
"""

import io
from unittest.mock import patch
from urllib.error import HTTPError, URLError

import pytest

from list_builder import ConfigurationError, RecordsApiError, RecordsStoreClient


@pytest.fixture
def client(base_config):
    return RecordsStoreClient(base_config)


@pytest.mark.unit
class TestRecordsStoreInit:
    def test_requires_token_and_base(self, base_config):
        base_config.airtable_api_token = ""

        with pytest.raises(ConfigurationError, match="Airtable configuration missing"):
            RecordsStoreClient(base_config)

    def test_bearer_header(self, client):
        assert client.headers["Authorization"] == "Bearer test_airtable_token"
        assert client.base_url == "https://api.airtable.com/v0/appTEST"


@pytest.mark.unit
@pytest.mark.http
class TestRecordsStoreWrites:
    def test_create_returns_record_id(self, client):
        with patch("list_builder._http_request", return_value={"id": "rec123", "fields": {}}) as mock_http:
            assert client.create("Leads", {"Name": "Alex"}) == "rec123"

        args, kwargs = mock_http.call_args
        assert args == ("POST", "https://api.airtable.com/v0/appTEST/Leads")
        assert kwargs["json_body"] == {"fields": {"Name": "Alex"}}
        assert mock_http.call_count == 1

    def test_create_without_id_fails(self, client):
        with patch("list_builder._http_request", return_value={"fields": {}}):
            with pytest.raises(RecordsApiError):
                client.create("Leads", {"Name": "Alex"})

    def test_patch_targets_record(self, client):
        with patch("list_builder._http_request", return_value={"id": "rec1"}) as mock_http:
            client.patch("Client Leads", "rec1", {"Status": "Sent"})

        args, kwargs = mock_http.call_args
        assert args == ("PATCH", "https://api.airtable.com/v0/appTEST/Client%20Leads/rec1")
        assert kwargs["json_body"] == {"fields": {"Status": "Sent"}}

    def test_http_error_maps_to_records_error(self, client):
        error = HTTPError("http://x", 422, "Unprocessable", {}, io.BytesIO(b'{"error": "INVALID_VALUE"}'))
        with patch("list_builder._http_request", side_effect=error):
            with pytest.raises(RecordsApiError) as excinfo:
                client.patch("Leads", "rec1", {"Status": 5})

        assert excinfo.value.status == 422
        assert "INVALID_VALUE" in excinfo.value.body
        assert excinfo.value.message == "Records API Error: 422"

    def test_network_error_maps_to_status_zero(self, client):
        with patch("list_builder._http_request", side_effect=URLError("timed out")):
            with pytest.raises(RecordsApiError) as excinfo:
                client.create("Leads", {})

        assert excinfo.value.status == 0
        assert "timed out" in excinfo.value.body


@pytest.mark.unit
@pytest.mark.http
class TestRecordsStoreQuery:
    def test_follows_offset_until_exhausted(self, client):
        pages = [
            {"records": [{"id": "rec1"}, {"id": "rec2"}], "offset": "itrA"},
            {"records": [{"id": "rec3"}], "offset": "itrB"},
            {"records": [{"id": "rec4"}]},
        ]
        with patch("list_builder._http_request", side_effect=pages) as mock_http:
            records = list(client.query("Clients", filter_formula="{Status}='Active'", fields=["Name"]))

        assert [r["id"] for r in records] == ["rec1", "rec2", "rec3", "rec4"]
        assert mock_http.call_count == 3
        first_params = mock_http.call_args_list[0][1]["params"]
        assert first_params == {"filterByFormula": "{Status}='Active'", "fields[]": ["Name"]}
        assert mock_http.call_args_list[1][1]["params"]["offset"] == "itrA"
        assert mock_http.call_args_list[2][1]["params"]["offset"] == "itrB"

    def test_empty_table(self, client):
        with patch("list_builder._http_request", return_value={"records": []}) as mock_http:
            assert list(client.query("Clients")) == []

        assert mock_http.call_args[1]["params"] is None

    def test_list_tenants_maps_fields(self, client):
        page = {
            "records": [
                {"id": "rec1", "fields": {"Client Name": "Acme", "Email": "ops@acme.com", "Status": "Active"}},
                {"id": "rec2", "fields": {"Name": "Globex"}},
                {"id": "rec3", "fields": {}},
            ]
        }
        with patch("list_builder._http_request", return_value=page) as mock_http:
            tenants = client.list_tenants()

        assert mock_http.call_args[0][1].endswith("/appTEST/Clients")
        assert tenants == [
            {"id": "rec1", "name": "Acme", "email": "ops@acme.com", "status": "Active"},
            {"id": "rec2", "name": "Globex", "email": None, "status": None},
            {"id": "rec3", "name": "Unnamed Client", "email": None, "status": None},
        ]
