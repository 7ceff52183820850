#!/usr/bin/env python3
"""
PlexShelf Media Models

This module contains the normalized record types produced by the Plex library
fetcher and stored by the reconciler. Records are built fresh on every sync,
never mutated afterwards, and converted to plain dictionaries (documents) for
storage.

Show and season aggregates are always derived from their children. The Plex
show node carries its own leaf counts and sizes, but those are not trusted;
ShowRecord.build() and SeasonRecord.build() recompute them bottom-up.

Classes:
    AudioStream: Summary of one kept audio track
    MovieRecord: Normalized movie
    EpisodeRecord: Normalized TV episode
    SeasonRecord: Season with its episodes and derived episode count
    ShowRecord: Show with its seasons and derived totals
    LibrarySection: A library partition on the Plex server
    LibraryFetch: Result of fetching one entity type, including failures

Project: PlexShelf
Version: 1.0.0
License: MIT
"""

from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Any


@dataclass(frozen=True)
class AudioStream:
    """Audio track summary: language name, upper-cased codec and channel count."""
    language: str
    codec: str
    channels: int


@dataclass(frozen=True)
class MovieRecord:
    """
    Normalized movie as stored in the ``movies`` collection.

    Attributes:
        title: Movie title
        title_with_year: "Title (Year)" or just the title when the year is unknown
        year: Release year or None
        duration_minutes: Runtime rounded to whole minutes
        duration_formatted: Runtime as "Xh Ym"
        file_size_bytes: Size of the first media part, 0 when unknown
        resolution: "1080p", "4K", "720", "SD"... or "Unknown"
        dimensions: "WIDTHxHEIGHT" with "?" for a missing side, or "Unknown"
        video_codec: Upper-cased codec name or "Unknown"
        audio_streams: Audio tracks in the configured languages
        external_id: Plex ratingKey, the reconciliation key
    """
    title: str
    title_with_year: str
    year: Optional[int]
    duration_minutes: int
    duration_formatted: str
    file_size_bytes: int
    resolution: str
    dimensions: str
    video_codec: str
    audio_streams: List[AudioStream]
    external_id: str

    def __post_init__(self) -> None:
        if not self.external_id:
            raise ValueError(f"Movie '{self.title}' has no external id")

    def to_document(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable document for storage."""
        return asdict(self)

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> 'MovieRecord':
        """Rebuild a record from a stored document."""
        values = dict(data)
        values['audio_streams'] = [AudioStream(**stream) for stream in values.get('audio_streams', [])]
        return cls(**values)


@dataclass(frozen=True)
class EpisodeRecord:
    """Normalized TV episode."""
    title: str
    season_number: int
    episode_number: int
    duration_minutes: int
    file_size_bytes: int
    resolution: str
    video_codec: str
    external_id: str

    def __post_init__(self) -> None:
        if not self.external_id:
            raise ValueError(f"Episode '{self.title}' has no external id")


@dataclass(frozen=True)
class SeasonRecord:
    """
    Season of a show.

    ``episode_count`` always equals ``len(episodes)``; use build() rather
    than passing a count that could disagree with the episode list.
    """
    season_number: int
    episode_count: int
    episodes: List[EpisodeRecord]
    external_id: str

    def __post_init__(self) -> None:
        if not self.external_id:
            raise ValueError(f"Season {self.season_number} has no external id")
        if self.episode_count != len(self.episodes):
            raise ValueError(
                f"Season {self.external_id} episode_count {self.episode_count} "
                f"does not match {len(self.episodes)} episodes"
            )

    @classmethod
    def build(cls, season_number: int, episodes: List[EpisodeRecord], external_id: str) -> 'SeasonRecord':
        """Create a season whose episode count is derived from its episodes."""
        return cls(
            season_number=season_number,
            episode_count=len(episodes),
            episodes=list(episodes),
            external_id=external_id,
        )

    @property
    def total_file_size_bytes(self) -> int:
        return sum(episode.file_size_bytes for episode in self.episodes)

    @property
    def total_duration_minutes(self) -> int:
        return sum(episode.duration_minutes for episode in self.episodes)


@dataclass(frozen=True)
class ShowRecord:
    """
    Normalized TV show as stored in the ``shows`` collection.

    ``season_count``, ``episode_count``, ``total_duration_minutes`` and
    ``total_file_size_bytes`` are rollups of ``seasons``. They are checked in
    __post_init__ so a record with inconsistent totals cannot exist.

    Example:
        ```python
        show = ShowRecord.build(
            title="Severance",
            year=2022,
            seasons=[season_one, season_two],
            external_id="4242",
        )
        show.episode_count == sum(s.episode_count for s in show.seasons)
        ```
    """
    title: str
    year: Optional[int]
    season_count: int
    episode_count: int
    total_duration_minutes: int
    total_file_size_bytes: int
    seasons: List[SeasonRecord]
    external_id: str

    def __post_init__(self) -> None:
        if not self.external_id:
            raise ValueError(f"Show '{self.title}' has no external id")
        if self.season_count != len(self.seasons):
            raise ValueError(f"Show {self.external_id} season_count does not match its seasons")
        if self.episode_count != sum(season.episode_count for season in self.seasons):
            raise ValueError(f"Show {self.external_id} episode_count does not match its seasons")
        if self.total_file_size_bytes != sum(season.total_file_size_bytes for season in self.seasons):
            raise ValueError(f"Show {self.external_id} total_file_size_bytes does not match its episodes")

    @classmethod
    def build(cls, title: str, year: Optional[int], seasons: List[SeasonRecord], external_id: str) -> 'ShowRecord':
        """Create a show whose totals are derived from its seasons and episodes."""
        return cls(
            title=title,
            year=year,
            season_count=len(seasons),
            episode_count=sum(season.episode_count for season in seasons),
            total_duration_minutes=sum(season.total_duration_minutes for season in seasons),
            total_file_size_bytes=sum(season.total_file_size_bytes for season in seasons),
            seasons=list(seasons),
            external_id=external_id,
        )

    def to_document(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable document for storage."""
        return asdict(self)

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> 'ShowRecord':
        """Rebuild a record from a stored document."""
        values = dict(data)
        seasons = []
        for season_data in values.get('seasons', []):
            season_values = dict(season_data)
            season_values['episodes'] = [EpisodeRecord(**episode) for episode in season_values.get('episodes', [])]
            seasons.append(SeasonRecord(**season_values))
        values['seasons'] = seasons
        return cls(**values)


@dataclass(frozen=True)
class LibrarySection:
    """A library partition on the Plex server ("movie", "show", "artist"...)."""
    key: str
    title: str
    type: str


@dataclass
class LibraryFetch:
    """
    Outcome of fetching one entity type from Plex.

    ``listed_ids`` records every item the section listing reported, in
    listing order. ``failed_ids`` is the subset whose detail fetch failed;
    the reconciler passes it as ``keep_ids`` so those items are neither
    updated nor pruned on this run.
    """
    records: List[Any] = field(default_factory=list)
    listed_ids: List[str] = field(default_factory=list)
    failed_ids: List[str] = field(default_factory=list)

    @property
    def skipped_count(self) -> int:
        return len(self.failed_ids)

    @property
    def complete(self) -> bool:
        return not self.failed_ids
