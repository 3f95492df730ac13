"""
Google Drive / Google Sheets aggregator for songs and setlists.

API Documentation:
- https://developers.google.com/drive/api/reference/rest/v3
- https://developers.google.com/sheets/api/reference/rest/v4

Songs live in one sub-folder each (README.md with front-matter), setlists
are spreadsheets whose sheets list song names. Every request goes through
the shared RetryExecutor, so the whole aggregate respects one rate limit.
"""

import asyncio
from typing import Any
from urllib.parse import quote

import httpx
from loguru import logger

from songbook.datasource.base import DataAggregator
from songbook.datasource.frontmatter import folder_name_to_title, parse_frontmatter
from songbook.datasource.models import Aggregate, Setlist, Song
from songbook.services.errors import ServiceError
from songbook.services.retry import RetryExecutor

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
SPREADSHEET_MIME_TYPE = "application/vnd.google-apps.spreadsheet"


def _is_json_object(data: Any) -> bool:
    return isinstance(data, dict)


def _is_text(data: Any) -> bool:
    return isinstance(data, str)


def flatten_cells(rows: list[list[Any]]) -> list[str]:
    """Flatten sheet rows into the non-blank cell values, row by row."""
    return [
        str(cell).strip()
        for row in rows
        for cell in row
        if cell is not None and str(cell).strip()
    ]


class GoogleDriveAggregator(DataAggregator):
    """
    Builds the songs/setlists aggregate from Google Drive and Sheets.

    Uses an API key (no OAuth); the folders must be shared publicly.
    """

    DRIVE_URL = "https://www.googleapis.com/drive/v3"
    SHEETS_URL = "https://sheets.googleapis.com/v4"
    SERVICE_ID = "google_drive"

    def __init__(
        self,
        api_key: str,
        songs_folder_id: str,
        setlists_folder_id: str,
        executor: RetryExecutor | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        super().__init__(executor)
        self.api_key = api_key
        self.songs_folder_id = songs_folder_id
        self.setlists_folder_id = setlists_folder_id
        self._timeout = timeout
        self._http_client = http_client

    @property
    def service_id(self) -> str:
        return self.SERVICE_ID

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def fetch_aggregate(self) -> Aggregate:
        """
        Fetch songs and setlists concurrently.

        Raises:
            UpstreamFatalError: If a top-level folder listing fails
        """
        songs, setlists = await asyncio.gather(
            self.fetch_songs(),
            self.fetch_setlists(),
            return_exceptions=True,
        )
        for result in (songs, setlists):
            if isinstance(result, BaseException):
                raise result

        logger.info(
            f"Fetched aggregate - Songs: {len(songs)}, Setlists: {len(setlists)}"
        )
        return Aggregate(songs=songs, setlists=setlists)

    # Songs

    async def fetch_songs(self) -> dict[str, Song]:
        """Load every song folder; folders that fail are skipped."""
        logger.info("Fetching songs from Google Drive...")
        folders = await self._list_files(
            f"'{self.songs_folder_id}' in parents and mimeType='{FOLDER_MIME_TYPE}'",
            fields="files(id,name)",
            description="list song folders",
        )
        logger.info(f"Found {len(folders)} song folders")

        songs: dict[str, Song] = {}
        for folder in folders:
            name = folder.get("name", "")
            try:
                song = await self._load_song(folder["id"], name)
            except (ServiceError, KeyError, ValueError) as e:
                logger.error(f"Error processing folder {name}: {e}")
                continue

            if song is None:
                logger.warning(f"No README.md found in folder \"{name}\"")
                continue

            songs[name] = song
            logger.debug(f"Loaded song \"{song.title}\" from folder \"{name}\"")

        return songs

    async def _load_song(self, folder_id: str, folder_name: str) -> Song | None:
        readmes = await self._list_files(
            f"'{folder_id}' in parents and name='README.md'",
            fields="files(id,name)",
            description=f"find README.md in {folder_name}",
        )
        if not readmes:
            return None

        text = await self.download(
            readmes[0]["id"], description=f"download README.md of {folder_name}"
        )
        frontmatter, _ = parse_frontmatter(text)

        fields = {
            key: value
            for key, value in frontmatter.items()
            if key not in ("title", "content")
        }
        title = frontmatter.get("title") or folder_name_to_title(folder_name)
        return Song(title=str(title), content=text, **fields)

    # Setlists

    async def fetch_setlists(self) -> dict[str, Setlist]:
        """Load every spreadsheet; files or sheets that fail are skipped."""
        logger.info("Fetching setlists from Google Drive...")
        files = await self._list_files(
            f"'{self.setlists_folder_id}' in parents and mimeType='{SPREADSHEET_MIME_TYPE}'",
            fields="files(id,name,mimeType)",
            description="list setlist spreadsheets",
        )
        logger.info(f"Found {len(files)} setlist spreadsheets")

        setlists: dict[str, Setlist] = {}
        for file in files:
            name = file.get("name", "")
            try:
                setlists.update(await self._load_spreadsheet(file["id"], name))
            except (ServiceError, KeyError, ValueError) as e:
                logger.error(f"Error processing setlist file {name}: {e}")

        return setlists

    async def _load_spreadsheet(self, spreadsheet_id: str, file_name: str) -> dict[str, Setlist]:
        metadata = await self.get_spreadsheet(
            spreadsheet_id, description=f"read metadata of {file_name}"
        )
        sheet_titles = [
            sheet["properties"]["title"] for sheet in metadata.get("sheets") or []
        ]

        setlists: dict[str, Setlist] = {}
        for sheet_title in sheet_titles:
            try:
                data = await self.get_values(
                    spreadsheet_id,
                    f"{sheet_title}!A:Z",
                    description=f"read {sheet_title}!A:Z of {file_name}",
                )
            except ServiceError as e:
                logger.error(
                    f"Error processing sheet \"{sheet_title}\" in file \"{file_name}\": {e}"
                )
                continue

            rows = data.get("values") or []
            if not rows:
                continue

            setlist_name = (
                file_name if len(sheet_titles) == 1 else f"{file_name} - {sheet_title}"
            )
            setlists[setlist_name] = Setlist(name=setlist_name, songs=flatten_cells(rows))
            logger.debug(
                f"Created setlist \"{setlist_name}\" with "
                f"{len(setlists[setlist_name].songs)} songs"
            )

        return setlists

    # Batch songs

    async def fetch_songs_for_folders(self, folder_ids: list[str]) -> dict[str, Song]:
        """Load the songs of the given folders; folders that fail are skipped."""
        logger.info(f"Batch fetching songs for {len(folder_ids)} folders")

        songs: dict[str, Song] = {}
        for folder_id in folder_ids:
            try:
                folder = await self.get_file(
                    folder_id, fields="name", description=f"read folder {folder_id}"
                )
                name = folder["name"]
                song = await self._load_song(folder_id, name)
            except (ServiceError, KeyError, ValueError) as e:
                logger.error(f"Error processing folder {folder_id}: {e}")
                continue

            if song is not None:
                songs[name] = song

        logger.info(f"Batch fetch completed. Songs fetched: {len(songs)}")
        return songs

    # Drive primitives

    async def list_files(
        self,
        query: str,
        fields: str | None = None,
        description: str = "list files",
    ) -> dict[str, Any]:
        """Run a Drive files.list query and return the raw response."""
        params: dict[str, Any] = {"q": query, "pageSize": 100}
        if fields:
            params["fields"] = fields
        return await self.executor.execute(
            lambda: self._get_json(f"{self.DRIVE_URL}/files", params),
            validate=_is_json_object,
            description=description,
        )

    async def _list_files(self, query: str, fields: str, description: str) -> list[dict[str, Any]]:
        data = await self.list_files(query, fields=fields, description=description)
        return data.get("files") or []

    async def get_file(
        self,
        file_id: str,
        fields: str = "id,name,mimeType",
        description: str | None = None,
    ) -> dict[str, Any]:
        """Read the metadata of one Drive file."""
        return await self.executor.execute(
            lambda: self._get_json(f"{self.DRIVE_URL}/files/{file_id}", {"fields": fields}),
            validate=_is_json_object,
            description=description or f"read metadata of file {file_id}",
        )

    async def download(self, file_id: str, description: str | None = None) -> str:
        """Download the content of one Drive file as text."""
        return await self.executor.execute(
            lambda: self._get_text(f"{self.DRIVE_URL}/files/{file_id}", {"alt": "media"}),
            validate=_is_text,
            description=description or f"download file {file_id}",
        )

    # Sheets primitives

    async def get_spreadsheet(
        self, spreadsheet_id: str, description: str | None = None
    ) -> dict[str, Any]:
        """Read spreadsheet properties and the properties of each sheet."""
        return await self.executor.execute(
            lambda: self._get_json(
                f"{self.SHEETS_URL}/spreadsheets/{spreadsheet_id}",
                {"fields": "properties,sheets.properties"},
            ),
            validate=_is_json_object,
            description=description or f"read metadata of spreadsheet {spreadsheet_id}",
        )

    async def get_values(
        self,
        spreadsheet_id: str,
        cell_range: str,
        description: str | None = None,
    ) -> dict[str, Any]:
        """Read a range of cell values (A1 notation) from a spreadsheet."""
        return await self.executor.execute(
            lambda: self._get_json(
                f"{self.SHEETS_URL}/spreadsheets/{spreadsheet_id}/values/"
                f"{quote(cell_range, safe='')}",
                {},
            ),
            validate=_is_json_object,
            description=description or f"read {cell_range} of spreadsheet {spreadsheet_id}",
        )

    # HTTP

    async def _get_json(self, url: str, params: dict[str, Any]) -> Any:
        response = await self._request(url, params)
        try:
            return response.json()
        except ValueError:
            # Error pages come back as HTML with a 200; hand the body to the
            # executor so it is classified instead of silently dropped.
            return response.text

    async def _get_text(self, url: str, params: dict[str, Any]) -> str:
        response = await self._request(url, params)
        return response.text

    async def _request(self, url: str, params: dict[str, Any]) -> httpx.Response:
        """Execute one GET against the Google APIs."""
        client = await self._get_http_client()
        response = await client.get(url, params={**params, "key": self.api_key})
        response.raise_for_status()
        return response
