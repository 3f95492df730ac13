"""Tests for the Drive/Sheets passthrough endpoints."""

from __future__ import annotations

import httpx
from fastapi.testclient import TestClient

from songbook.api.server import create_app
from songbook.datasource.google_drive import GoogleDriveAggregator
from songbook.services.data_service import CacheService
from songbook.services.rate_limiter import RateLimiter
from songbook.services.retry import RetryExecutor

from tests.conftest import FakeAggregator, make_aggregate

README = '---\ntitle = "Amazing Grace"\nkey = G\n---\n# Verse 1\n'


class FakeGoogleApi:
    """Canned Drive/Sheets responses for single passthrough calls."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        params = request.url.params

        if path == "/drive/v3/files":
            query = params.get("q", "")
            if query == "boom":
                return httpx.Response(500, text="backend error")
            if "'folder-1' in parents" in query:
                return httpx.Response(200, json={"files": [{"id": "readme-1", "name": "README.md"}]})
            return httpx.Response(
                200,
                json={"files": [{"id": "folder-1", "name": "amazing_grace"}], "fields": params.get("fields")},
            )
        if path == "/drive/v3/files/folder-1":
            return httpx.Response(200, json={"id": "folder-1", "name": "amazing_grace"})
        if path == "/drive/v3/files/readme-1":
            if params.get("alt") == "media":
                return httpx.Response(200, text=README)
            return httpx.Response(
                200,
                json={"id": "readme-1", "name": "README.md", "mimeType": "text/markdown", "fields": params["fields"]},
            )
        if path == "/drive/v3/files/throttled":
            return httpx.Response(429, text="Rate limit exceeded")
        if path == "/v4/spreadsheets/sheet-1":
            return httpx.Response(
                200,
                json={
                    "properties": {"title": "Sunday"},
                    "sheets": [{"properties": {"title": "Sheet1"}}],
                    "fields": params["fields"],
                },
            )
        if path == "/v4/spreadsheets/sheet-1/values/Sheet1!A1:B2":
            return httpx.Response(200, json={"range": "Sheet1!A1:B2", "values": [["Opener", "Closer"]]})
        return httpx.Response(404, text="File not found")


def _client(google: FakeGoogleApi, clock, configured: bool = True) -> TestClient:
    executor = RetryExecutor(
        RateLimiter(clock=clock.monotonic, sleep=clock.sleep),
        sleep=clock.sleep,
        service_id=GoogleDriveAggregator.SERVICE_ID,
    )
    drive = GoogleDriveAggregator(
        api_key="test-key",
        songs_folder_id="songs-root",
        setlists_folder_id="setlists-root",
        executor=executor,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(google)),
    )
    service = CacheService(drive, clock=clock.now)
    return TestClient(create_app(service, configured=configured))


class TestDriveRoutes:
    def test_list_files(self, clock) -> None:
        google = FakeGoogleApi()
        with _client(google, clock) as client:
            response = client.get(
                "/api/drive/files",
                params={"q": "'songs-root' in parents", "fields": "files(id,name)"},
            )

        assert response.status_code == 200
        assert response.json()["files"] == [{"id": "folder-1", "name": "amazing_grace"}]
        assert response.json()["fields"] == "files(id,name)"
        assert google.requests[0].url.params["pageSize"] == "100"
        assert google.requests[0].url.params["key"] == "test-key"

    def test_list_files_requires_query(self, clock) -> None:
        google = FakeGoogleApi()
        with _client(google, clock) as client:
            response = client.get("/api/drive/files")

        assert response.status_code == 400
        assert google.requests == []

    def test_list_files_failure_after_retries(self, clock) -> None:
        google = FakeGoogleApi()
        with _client(google, clock) as client:
            response = client.get("/api/drive/files", params={"q": "boom"})

        assert response.status_code == 502
        assert len(google.requests) == 3
        assert clock.sleeps == [4.0, 8.0]

    def test_file_metadata(self, clock) -> None:
        with _client(FakeGoogleApi(), clock) as client:
            response = client.get("/api/drive/readme-1")

        assert response.status_code == 200
        assert response.json()["name"] == "README.md"
        assert response.json()["fields"] == "id,name,mimeType"

    def test_file_content(self, clock) -> None:
        with _client(FakeGoogleApi(), clock) as client:
            response = client.get("/api/drive/readme-1", params={"alt": "media"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert response.text == README

    def test_missing_file_keeps_upstream_status(self, clock) -> None:
        with _client(FakeGoogleApi(), clock) as client:
            response = client.get("/api/drive/missing")

        assert response.status_code == 404

    def test_throttled_file_returns_429(self, clock) -> None:
        with _client(FakeGoogleApi(), clock) as client:
            response = client.get("/api/drive/throttled")

        assert response.status_code == 429
        assert "try again later" in response.json()["detail"]
        assert clock.sleeps == [20.0, 40.0, 80.0]

    def test_batch_songs_skips_failing_folders(self, clock) -> None:
        with _client(FakeGoogleApi(), clock) as client:
            response = client.get("/api/drive/batch-songs", params={"folderIds": "folder-1,missing"})

        assert response.status_code == 200
        songs = response.json()["songs"]
        assert list(songs) == ["amazing_grace"]
        assert songs["amazing_grace"]["title"] == "Amazing Grace"
        assert songs["amazing_grace"]["key"] == "G"
        assert songs["amazing_grace"]["content"] == README

    def test_batch_songs_requires_folder_ids(self, clock) -> None:
        with _client(FakeGoogleApi(), clock) as client:
            assert client.get("/api/drive/batch-songs").status_code == 400


class TestSheetsRoutes:
    def test_values(self, clock) -> None:
        with _client(FakeGoogleApi(), clock) as client:
            response = client.get(
                "/api/sheets/values",
                params={"spreadsheetId": "sheet-1", "range": "Sheet1!A1:B2"},
            )

        assert response.status_code == 200
        assert response.json()["values"] == [["Opener", "Closer"]]

    def test_values_require_both_parameters(self, clock) -> None:
        with _client(FakeGoogleApi(), clock) as client:
            response = client.get("/api/sheets/values", params={"spreadsheetId": "sheet-1"})

        assert response.status_code == 400

    def test_spreadsheet_metadata(self, clock) -> None:
        with _client(FakeGoogleApi(), clock) as client:
            response = client.get("/api/sheets/spreadsheets/sheet-1")

        assert response.status_code == 200
        assert response.json()["sheets"][0]["properties"]["title"] == "Sheet1"
        assert response.json()["fields"] == "properties,sheets.properties"

    def test_spreadsheet_values_path(self, clock) -> None:
        with _client(FakeGoogleApi(), clock) as client:
            response = client.get("/api/sheets/spreadsheets/sheet-1/values/Sheet1!A1:B2")

        assert response.status_code == 200
        assert response.json()["range"] == "Sheet1!A1:B2"

    def test_spreadsheet_malformed_path(self, clock) -> None:
        with _client(FakeGoogleApi(), clock) as client:
            response = client.get("/api/sheets/spreadsheets/sheet-1/cells")

        assert response.status_code == 400


def test_passthroughs_require_api_key(clock) -> None:
    google = FakeGoogleApi()
    with _client(google, clock, configured=False) as client:
        response = client.get("/api/drive/files", params={"q": "x"})

    assert response.status_code == 500
    assert google.requests == []


def test_passthroughs_need_a_google_aggregator(clock) -> None:
    service = CacheService(FakeAggregator(make_aggregate("v1")), clock=clock.now)
    with TestClient(create_app(service)) as client:
        assert client.get("/api/drive/files", params={"q": "x"}).status_code == 404
