"""
Data models for songs, setlists and the aggregate served to clients.
"""

from pydantic import BaseModel, ConfigDict, Field


class Song(BaseModel):
    """A song sheet loaded from a folder's README.md.

    Front-matter keys other than title are kept as extra fields.
    """

    model_config = ConfigDict(extra="allow")

    title: str
    content: str = ""


class Setlist(BaseModel):
    """An ordered list of song names read from a spreadsheet."""

    name: str
    songs: list[str] = Field(default_factory=list)


class Aggregate(BaseModel):
    """Everything the provider holds, keyed by song id and setlist name."""

    songs: dict[str, Song] = Field(default_factory=dict)
    setlists: dict[str, Setlist] = Field(default_factory=dict)
