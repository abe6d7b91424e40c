import httplib2
import pytest
from googleapiclient.errors import HttpError

from fakes import FakeSheetsService, make_client
from runsync.running_session import SessionDraft, TimeTrackerSession
from runsync.sheet_upsert import (
    DEFAULT_COLUMN_ORDER,
    MappingIncompleteError,
    RowNotFoundError,
    SessionSheet,
    SyncConflictError,
)

START_MS = 1_704_067_200_000  # 2024/01/01 09:00:00 JST
LETTER_MAPPING = {
    "id": "A",
    "status": "B",
    "title": "C",
    "started_at": "D",
    "ended_at": "E",
    "duration_seconds": "F",
    "tags": "H",
}


def _draft(**overrides):
    values = {"id": "s-1", "title": "Deep work", "started_at": START_MS, "tags": ("focus", "writing")}
    values.update(overrides)
    return SessionDraft(**values)


def _session(**overrides):
    values = {
        "id": "s-1",
        "title": "Deep work",
        "started_at": START_MS,
        "ended_at": START_MS + 90_000,
        "duration_seconds": 90,
        "tags": ("focus",),
    }
    values.update(overrides)
    return TimeTrackerSession(**values)


def _http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({"status": str(status)}), b'{"error": {"message": "boom"}}')


def _sheet(service, mapping=LETTER_MAPPING, **kwargs):
    return SessionSheet(make_client(service), "Time Log", mapping, **kwargs)


def test_build_running_row_places_fields_and_fills_gaps():
    row = _sheet(FakeSheetsService()).build_running_row(_draft())

    assert row == ["s-1", "Running", "Deep work", "2024/01/01 09:00:00", "", 0, "", "focus, writing"]


def test_build_completed_row_without_mapping_uses_default_order():
    row = _sheet(FakeSheetsService(), mapping=None).build_completed_row(_session())

    assert len(row) == len(DEFAULT_COLUMN_ORDER)
    assert row[:5] == ["Completed", "Deep work", "2024/01/01 09:00:00", "2024/01/01 09:01:30", 90]
    assert row[7] == "focus"


def test_start_appends_running_row():
    service = FakeSheetsService([["Id", "Status"]])

    result = _sheet(service).start(_draft())

    assert result.status == "ok"
    append = service.write_calls[0]
    assert append[0] == "append"
    assert append[1] == "'Time Log'!A1"
    assert append[2:4] == ("USER_ENTERED", "INSERT_ROWS")
    assert service.rows[1][:2] == ["s-1", "Running"]


def test_start_requires_id_and_status_before_any_call():
    service = FakeSheetsService()

    with pytest.raises(MappingIncompleteError):
        _sheet(service, mapping={"title": "C"}).start(_draft())

    assert service.calls == []


def test_start_with_unresolvable_headers_raises_mapping_incomplete():
    service = FakeSheetsService([["Other", "Columns"]])

    with pytest.raises(MappingIncompleteError):
        _sheet(service, mapping={"id": "Session Id", "status": "Run Status"}).start(_draft())

    assert service.write_calls == []


def test_update_rewrites_existing_row_in_one_batch():
    service = FakeSheetsService([["Id"], ["other"], ["s-1", "Running", "Deep work"]])

    result = _sheet(service).update(_draft(title="Writing"), 125.9)

    assert result.status == "ok"
    assert result.row_number == 3
    batches = [call for call in service.write_calls if call[0] == "values.batchUpdate"]
    assert len(batches) == 1
    ranges = [entry["range"] for entry in batches[0][1]["data"]]
    assert "'Time Log'!C3" in ranges
    assert "'Time Log'!E3" not in ranges  # end time is not touched while running
    assert service.rows[2][2] == "Writing"
    assert service.rows[2][5] == 125


def test_update_missing_row_raises_row_not_found_without_recreating():
    service = FakeSheetsService([["Id"]])

    with pytest.raises(RowNotFoundError) as excinfo:
        _sheet(service).update(_draft(), 10)

    assert excinfo.value.code == "row_not_found"
    assert service.write_calls == []


def test_start_then_complete_mutates_exactly_one_row():
    service = FakeSheetsService([["Id", "Status"]])
    sheet = _sheet(service)

    sheet.start(_draft())
    result = sheet.complete(_session())

    assert result.action == "updated"
    assert len(service.rows) == 2
    assert service.rows[1][:6] == [
        "s-1",
        "Completed",
        "Deep work",
        "2024/01/01 09:00:00",
        "2024/01/01 09:01:30",
        90,
    ]


def test_complete_without_running_row_appends_completed_row():
    service = FakeSheetsService([["Id", "Status"]])

    result = _sheet(service).complete(_session())

    assert result.action == "appended"
    assert result.response is not None
    assert service.rows[1][1] == "Completed"


def test_complete_treats_failed_lookup_as_not_found():
    service = FakeSheetsService([["Id", "Status"], ["s-1", "Running"]])
    service.fail_get = _http_error(403)

    result = _sheet(service).complete(_session())

    assert result.action == "appended"
    assert len(service.rows) == 3


def test_cancel_clears_every_mapped_cell():
    service = FakeSheetsService([["Id"], ["s-1", "Running", "Deep work", "x", "", 3, "", "focus"]])

    result = _sheet(service).cancel("s-1")

    assert result.status == "ok"
    assert all(service.rows[1][index] == "" for index in (0, 1, 2, 3, 4, 5, 7))


def test_cancel_missing_row_is_skipped_without_writes():
    service = FakeSheetsService([["Id"]])

    result = _sheet(service).cancel("s-1")

    assert result.status == "skipped"
    assert service.write_calls == []


def test_delete_removes_the_row_span():
    service = FakeSheetsService([["Id"], ["s-0"], ["s-1"]])

    result = _sheet(service, sheet_id=7).delete("s-1")

    assert result.status == "ok"
    request = service.write_calls[0][1]["requests"][0]["deleteDimension"]["range"]
    assert request == {"sheetId": 7, "dimension": "ROWS", "startIndex": 2, "endIndex": 3}
    assert service.rows == [["Id"], ["s-0"]]


def test_delete_missing_row_is_skipped():
    service = FakeSheetsService([["Id"]])

    result = _sheet(service, sheet_id=7).delete("s-1")

    assert result.status == "skipped"
    assert service.write_calls == []


def test_delete_requires_sheet_id():
    with pytest.raises(SyncConflictError) as excinfo:
        _sheet(FakeSheetsService()).delete("s-1")

    assert excinfo.value.code == "selection_missing"


def test_header_named_mapping_reads_header_once():
    service = FakeSheetsService([["Session Id", "Run Status", "Task name"], ["s-1", "Running", "Old"]])
    mapping = {"id": "Session Id", "status": "Run Status", "title": "Task name"}

    _sheet(service, mapping=mapping).update(_draft(title="New"), 5)

    header_reads = [call for call in service.calls if call == ("get", "'Time Log'!1:1")]
    assert len(header_reads) == 1
    assert service.rows[1][2] == "New"


def test_failed_header_read_leaves_only_header_fields_unmapped():
    service = FakeSheetsService([["Id", "Status"]])
    service.fail_header = _http_error(500)
    mapping = {"id": "A", "status": "B", "title": "Task name"}

    _sheet(service, mapping=mapping).start(_draft())

    assert service.rows[1] == ["s-1", "Running"]
