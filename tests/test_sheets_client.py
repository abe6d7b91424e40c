from pathlib import Path

import httplib2
import pytest
from googleapiclient.errors import HttpError

from fakes import FakeSheetsService, make_client
from runsync import sheets_client
from runsync.sheets_client import (
    GoogleSheetsClient,
    SheetsApiResponseError,
    SheetsClientError,
    SheetsCredentialsError,
    build_client,
)
from settings import SyncSettings


def _http_error(status: int, message: str = "boom") -> HttpError:
    body = ('{"error": {"message": "%s"}}' % message).encode("utf-8")
    return HttpError(httplib2.Response({"status": str(status)}), body)


class _FlakyRequest:
    def __init__(self, failures):
        self._failures = list(failures)
        self.attempts = 0

    def execute(self):
        self.attempts += 1
        if self._failures:
            raise self._failures.pop(0)
        return {"values": [["ok"]]}


def test_call_with_retry_retries_transient_statuses():
    delays = []
    client = GoogleSheetsClient("sheet", FakeSheetsService(), sleep=delays.append)
    request = _FlakyRequest([_http_error(503), _http_error(429)])

    result = client._call_with_retry(request, "values.get")

    assert result == {"values": [["ok"]]}
    assert request.attempts == 3
    assert delays == [1, 2]


def test_call_with_retry_surfaces_permanent_errors_with_status():
    client = make_client(FakeSheetsService())
    request = _FlakyRequest([_http_error(401, "Invalid Credentials")])

    with pytest.raises(SheetsApiResponseError) as excinfo:
        client._call_with_retry(request, "values.get")

    assert excinfo.value.status == 401
    assert "Invalid Credentials" in str(excinfo.value)
    assert request.attempts == 1


def test_call_with_retry_gives_up_after_max_attempts():
    client = GoogleSheetsClient("sheet", FakeSheetsService(), sleep=lambda _delay: None, max_attempts=3)
    request = _FlakyRequest([_http_error(500)] * 5)

    with pytest.raises(SheetsApiResponseError) as excinfo:
        client._call_with_retry(request, "values.get")

    assert excinfo.value.status == 500
    assert request.attempts == 3


def test_get_range_returns_rows():
    service = FakeSheetsService([["Id"], ["s-1"]])

    assert make_client(service).get_range("'Log'!A:A") == [["Id"], ["s-1"]]


def test_append_row_wraps_values_and_quotes_title():
    service = FakeSheetsService()

    make_client(service).append_row("Bob's Log", ["a", 1], value_input_option="RAW")

    call = service.write_calls[0]
    assert call[1] == "'Bob''s Log'!A1"
    assert call[2] == "RAW"
    assert call[4] == {"values": [["a", 1]]}


def test_batch_update_values_skips_empty_payload():
    service = FakeSheetsService()

    assert make_client(service).batch_update_values([]) == {}
    assert service.calls == []


def test_delete_rows_validates_span():
    with pytest.raises(ValueError):
        make_client(FakeSheetsService()).delete_rows(0, 3, 3)


def test_list_sheets_orders_by_index():
    service = FakeSheetsService()
    service.sheets = [
        {"properties": {"sheetId": 2, "title": "Archive", "index": 1}},
        {"properties": {"sheetId": 1, "title": "Log", "index": 0}},
        {"properties": {}},
    ]

    assert make_client(service).list_sheets() == [
        {"id": 1, "title": "Log", "index": 0},
        {"id": 2, "title": "Archive", "index": 1},
    ]


def test_build_client_prefers_connection_tokens(monkeypatch):
    captured = {}

    def fake_build_service(credentials):
        captured["credentials"] = credentials
        return FakeSheetsService()

    monkeypatch.setattr(sheets_client, "build_service", fake_build_service)
    connection = {"spreadsheet_id": "abc", "access_token": "tok", "refresh_token": "ref"}

    client = build_client(connection, SyncSettings(google_client_id="cid", google_client_secret="secret"))

    assert client.spreadsheet_id == "abc"
    assert captured["credentials"].token == "tok"
    assert captured["credentials"].refresh_token == "ref"
    assert captured["credentials"].client_id == "cid"


def test_build_client_without_tokens_needs_valid_service_account(tmp_path: Path):
    settings = SyncSettings(credential_path=str(tmp_path / "missing.json"))

    with pytest.raises(SheetsCredentialsError):
        build_client({"spreadsheet_id": "abc"}, settings)


def test_build_client_requires_selected_spreadsheet(monkeypatch):
    monkeypatch.setattr(sheets_client, "build_service", lambda credentials: FakeSheetsService())

    with pytest.raises(SheetsClientError):
        build_client({"access_token": "tok"}, SyncSettings())
