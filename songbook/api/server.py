"""FastAPI server exposing the cached songs/setlists aggregate."""

from typing import Any

import httpx
from fastapi import FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from loguru import logger

from songbook.datasource.google_drive import GoogleDriveAggregator
from songbook.exceptions import (
    BadRequestError,
    ConfigurationError,
    ServiceUnavailableError,
    UpstreamRequestError,
)
from songbook.services.data_service import CacheService
from songbook.services.errors import NoDataAvailableError, UpstreamFatalError
from songbook.services.retry import AttemptOutcome, classify_error


def upstream_error(error: UpstreamFatalError) -> UpstreamRequestError:
    """Map a failed Google API call onto an HTTP error."""
    cause = error.last_error
    if cause is not None and classify_error(cause) is AttemptOutcome.RETRYABLE_SOFT:
        return UpstreamRequestError(
            "Google detected automated queries or rate limiting. Please try again later.",
            status_code=429,
        )
    if isinstance(cause, httpx.HTTPStatusError) and cause.response.status_code in (403, 404):
        return UpstreamRequestError(str(error), status_code=cause.response.status_code)
    return UpstreamRequestError(str(error))


class SongbookServer:
    """HTTP server for the data endpoints and the Google API passthroughs."""

    def __init__(
        self,
        service: CacheService,
        configured: bool = True,
        drive: GoogleDriveAggregator | None = None,
    ):
        self.service = service
        self.configured = configured
        self.drive = drive
        self.app = FastAPI(title="Songbook Data Server")
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Origin", "X-Requested-With", "Content-Type", "Accept"],
        )

        # Register routes
        self.app.get("/api/data/all")(self.get_all)
        self.app.post("/api/data/refresh")(self.refresh)
        self.app.get("/health")(self.health_check)

        if drive is not None:
            # batch-songs must be registered before the {file_id} route
            self.app.get("/api/drive/files")(self.list_files)
            self.app.get("/api/drive/batch-songs")(self.batch_songs)
            self.app.get("/api/drive/{file_id}", response_model=None)(self.get_file)
            self.app.get("/api/sheets/values")(self.get_values)
            self.app.get("/api/sheets/spreadsheets/{params:path}")(self.get_spreadsheet)

    def _ensure_configured(self) -> None:
        if not self.configured:
            logger.error("GOOGLE_API_KEY environment variable is not set")
            raise ConfigurationError(
                "Google API key not configured. "
                "Please set the GOOGLE_API_KEY environment variable."
            )

    async def get_all(self) -> dict[str, Any]:
        """Serve songs and setlists, from cache when fresh."""
        self._ensure_configured()
        try:
            result = await self.service.get()
        except NoDataAvailableError as e:
            raise ServiceUnavailableError(str(e)) from e
        return result.to_dict()

    async def refresh(self) -> dict[str, Any]:
        """Refresh songs and setlists, bypassing the cache."""
        self._ensure_configured()
        try:
            result = await self.service.force_refresh()
        except NoDataAvailableError as e:
            raise ServiceUnavailableError(str(e)) from e
        return result.to_dict()

    async def health_check(self) -> dict[str, Any]:
        """Health check endpoint."""
        return {
            "status": "ok",
            "service": "songbook",
            "cache": self.service.get_health_status(),
        }

    # Google API passthroughs, uncached but rate limited and retried

    async def list_files(self, q: str | None = None, fields: str | None = None) -> dict[str, Any]:
        """Run a Drive files query."""
        self._ensure_configured()
        if not q:
            raise BadRequestError('Query parameter "q" is required')

        logger.info(f"Drive API request: q={q!r} fields={fields!r}")
        try:
            return await self.drive.list_files(q, fields=fields)
        except UpstreamFatalError as e:
            logger.error(f"Drive API error: {e}")
            raise upstream_error(e) from e

    async def get_file(self, file_id: str, alt: str | None = None) -> dict[str, Any] | PlainTextResponse:
        """Serve a Drive file's metadata, or its content with alt=media."""
        self._ensure_configured()
        try:
            if alt == "media":
                return PlainTextResponse(await self.drive.download(file_id))
            return await self.drive.get_file(file_id)
        except UpstreamFatalError as e:
            logger.error(f"Drive file API error: {e}")
            raise upstream_error(e) from e

    async def batch_songs(
        self,
        folder_ids: str | None = Query(default=None, alias="folderIds"),
    ) -> dict[str, Any]:
        """Load the songs of a comma-separated list of folder ids."""
        self._ensure_configured()
        ids = [folder_id for folder_id in (folder_ids or "").split(",") if folder_id]
        if not ids:
            raise BadRequestError("folderIds parameter is required")

        songs = await self.drive.fetch_songs_for_folders(ids)
        return {"songs": {name: song.model_dump() for name, song in songs.items()}}

    async def get_values(
        self,
        spreadsheet_id: str | None = Query(default=None, alias="spreadsheetId"),
        cell_range: str | None = Query(default=None, alias="range"),
    ) -> dict[str, Any]:
        """Read cell values from a spreadsheet."""
        self._ensure_configured()
        if not spreadsheet_id or not cell_range:
            raise BadRequestError("spreadsheetId and range query parameters are required")
        return await self._read_values(spreadsheet_id, cell_range)

    async def get_spreadsheet(self, params: str) -> dict[str, Any]:
        """Serve /{spreadsheetId} metadata or /{spreadsheetId}/values/{range}."""
        self._ensure_configured()
        parts = params.split("/")
        spreadsheet_id = parts[0]
        if not spreadsheet_id:
            raise BadRequestError(
                "Invalid route format. Expected: /spreadsheets/{spreadsheetId} "
                "or /spreadsheets/{spreadsheetId}/values/{range}"
            )

        if len(parts) == 1:
            logger.info(f"Sheets API metadata request: {spreadsheet_id}")
            try:
                return await self.drive.get_spreadsheet(spreadsheet_id)
            except UpstreamFatalError as e:
                logger.error(f"Sheets API metadata error: {e}")
                raise upstream_error(e) from e

        if len(parts) < 3 or parts[1] != "values":
            raise BadRequestError(
                "Invalid route format. Expected: /spreadsheets/{spreadsheetId}/values/{range}"
            )
        return await self._read_values(spreadsheet_id, "/".join(parts[2:]))

    async def _read_values(self, spreadsheet_id: str, cell_range: str) -> dict[str, Any]:
        logger.info(f"Sheets API values request: {spreadsheet_id} {cell_range}")
        try:
            return await self.drive.get_values(spreadsheet_id, cell_range)
        except UpstreamFatalError as e:
            logger.error(f"Sheets API error: {e}")
            raise upstream_error(e) from e


def create_app(
    service: CacheService,
    configured: bool = True,
    drive: GoogleDriveAggregator | None = None,
) -> FastAPI:
    """Create FastAPI app for the data endpoints.

    Args:
        service: CacheService the handlers read from
        configured: Whether upstream credentials are present
        drive: Aggregator backing the passthrough routes; defaults to the
            service's own aggregator when that one talks to Google Drive

    Returns:
        FastAPI app
    """
    if drive is None and isinstance(service.aggregator, GoogleDriveAggregator):
        drive = service.aggregator
    server = SongbookServer(service, configured=configured, drive=drive)
    return server.app
