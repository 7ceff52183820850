#!/usr/bin/env python3
"""
PlexShelf Plex API Client

This module talks to a Plex Media Server over its XML HTTP API and turns the
loosely structured responses into the normalized records defined in
media_models. Every Plex response is a ``MediaContainer`` holding
``Directory`` (sections, shows, seasons) or ``Video`` (movies, episodes)
nodes, with ``Media`` / ``Part`` / ``Stream`` children describing the files.

**Fetch shape:**
    Movies: list the movie section, then fetch every movie's metadata
    concurrently because the listing does not include audio streams.
    Shows: list the show section, then walk show -> seasons -> episodes.

**Failure isolation:**
    A failed detail fetch (or any error while walking one show) excludes that
    one item from the result and records its id in ``LibraryFetch.failed_ids``.
    Failures that leave nothing to reconcile (listing failure, missing
    section) propagate to the caller.

Classes:
    PlexError: Base class for Plex client errors
    PlexRequestError: HTTP, network or XML failure for one request
    PlexTimeoutError: A single request exceeded its timeout
    SectionNotFoundError: No library section of the requested type
    PlexAPI: Async Plex client producing normalized records

Project: PlexShelf
Version: 1.0.0
License: MIT
"""

import asyncio
import xml.etree.ElementTree as ET
from typing import Any, Iterable, List, Optional, Tuple

import aiohttp

from .config_models import PlexConfig
from .media_models import (
    AudioStream, MovieRecord, EpisodeRecord, SeasonRecord, ShowRecord,
    LibrarySection, LibraryFetch
)
from .utils import get_logger, format_duration


# Plex streamType values
AUDIO_STREAM_TYPE = "2"

# Synthetic season node aggregating every episode of a show
ALL_EPISODES_TITLE = "All episodes"


class PlexError(Exception):
    """Base class for errors raised by the Plex client."""


class PlexRequestError(PlexError):
    """A Plex request failed (HTTP status, connection error or unparseable XML)."""

    def __init__(self, message: str, url: str, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class PlexTimeoutError(PlexRequestError):
    """A Plex request did not complete within the configured timeout."""


class SectionNotFoundError(PlexError):
    """The Plex server has no library section of the requested type."""

    def __init__(self, media_type: str):
        super().__init__(f"No {media_type} section found in Plex library")
        self.media_type = media_type


def _safe_int(value: Any, default: Optional[int] = 0) -> Optional[int]:
    """Convert an XML attribute to int, returning ``default`` when missing or invalid."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return default


def milliseconds_to_minutes(milliseconds: int) -> int:
    """Round a millisecond duration to whole minutes, halves rounding up."""
    if milliseconds <= 0:
        return 0
    return (milliseconds + 30000) // 60000


def normalize_resolution(value: Optional[str]) -> str:
    """
    Normalize a Plex ``videoResolution`` attribute.

    Plex reports 1080p content as a bare "1080"; that one value gets its "p"
    suffix. Everything else is upper-cased ("4k" -> "4K", "sd" -> "SD") and a
    missing value becomes "Unknown".
    """
    if not value:
        return "Unknown"
    if value == "1080":
        return "1080p"
    return value.upper()


def _format_dimensions(media: Optional[ET.Element]) -> str:
    if media is None:
        return "Unknown"
    width = media.get("width") or "?"
    height = media.get("height") or "?"
    return f"{width}x{height}"


def _first_media_part(node: ET.Element) -> Tuple[Optional[ET.Element], Optional[ET.Element]]:
    """Return the first Media element of a Video node and that media's first Part."""
    media = node.find("Media")
    if media is None:
        return None, None
    return media, media.find("Part")


def normalize_audio_streams(part: Optional[ET.Element], languages: Iterable[str]) -> List[AudioStream]:
    """
    Summarize the audio tracks of a media part.

    Only streams with ``streamType`` 2 (audio) whose ``languageCode`` is in
    ``languages`` are kept. Missing codec and channel values fall back to
    "UNKNOWN" and 2.
    """
    if part is None:
        return []

    allowed = set(languages)
    streams = []
    for stream in part.findall("Stream"):
        if stream.get("streamType") != AUDIO_STREAM_TYPE:
            continue
        if (stream.get("languageCode") or "").lower() not in allowed:
            continue
        streams.append(AudioStream(
            language=stream.get("language") or "Unknown",
            codec=(stream.get("codec") or "Unknown").upper(),
            channels=_safe_int(stream.get("channels"), 2),
        ))
    return streams


def normalize_movie(video: ET.Element, languages: Iterable[str]) -> MovieRecord:
    """
    Build a MovieRecord from a movie ``Video`` metadata node.

    Args:
        video: The ``Video`` element from ``/library/metadata/{ratingKey}``
        languages: Audio language codes to keep

    Returns:
        MovieRecord: Normalized movie

    Raises:
        ValueError: If the node has no ratingKey
    """
    media, part = _first_media_part(video)

    title = video.get("title") or "Unknown"
    year = _safe_int(video.get("year"), None)
    duration_minutes = milliseconds_to_minutes(_safe_int(video.get("duration")))
    video_codec = media.get("videoCodec") if media is not None else None

    return MovieRecord(
        title=title,
        title_with_year=f"{title} ({year})" if year else title,
        year=year,
        duration_minutes=duration_minutes,
        duration_formatted=format_duration(duration_minutes),
        file_size_bytes=_safe_int(part.get("size")) if part is not None else 0,
        resolution=normalize_resolution(media.get("videoResolution") if media is not None else None),
        dimensions=_format_dimensions(media),
        video_codec=video_codec.upper() if video_codec else "Unknown",
        audio_streams=normalize_audio_streams(part, languages),
        external_id=video.get("ratingKey") or "",
    )


def normalize_episode(video: ET.Element, season_number: int) -> EpisodeRecord:
    """Build an EpisodeRecord from an episode ``Video`` node of a season listing."""
    media, part = _first_media_part(video)
    video_codec = media.get("videoCodec") if media is not None else None

    return EpisodeRecord(
        title=video.get("title") or "Unknown",
        season_number=season_number,
        episode_number=_safe_int(video.get("index")),
        duration_minutes=milliseconds_to_minutes(_safe_int(video.get("duration"))),
        file_size_bytes=_safe_int(part.get("size")) if part is not None else 0,
        resolution=normalize_resolution(media.get("videoResolution") if media is not None else None),
        video_codec=video_codec.upper() if video_codec else "Unknown",
        external_id=video.get("ratingKey") or "",
    )


class PlexAPI:
    """
    Async client for the Plex Media Server XML API.

    The client owns one aiohttp session, created in initialize() (or lazily
    on the first request) and released by close(). Every request carries the
    Plex token and client identifier headers and is bounded by the configured
    per-request timeout. There is no retry here; callers decide what a
    failure means for them.

    Attributes:
        config (PlexConfig): Server URL, token, timeout and language settings
        logger (logging.Logger): Logger for request and normalization events

    Example:
        ```python
        plex = PlexAPI(config.plex)
        await plex.initialize()
        try:
            movies = await plex.fetch_movies()
        finally:
            await plex.close()
        ```
    """

    def __init__(self, config: PlexConfig, session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self.logger = get_logger("plexshelf.plex")
        self._session = session
        self._owns_session = session is None
        self._semaphore = asyncio.Semaphore(config.max_concurrent_requests)

    async def initialize(self) -> None:
        """Create the HTTP session."""
        self._get_session()
        self.logger.info(f"Plex client ready for {self.config.server_url}")

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "X-Plex-Token": self.config.token,
                    "X-Plex-Client-Identifier": self.config.client_identifier,
                    "Accept": "application/xml",
                }
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _fetch_xml(self, endpoint: str) -> ET.Element:
        """
        GET an endpoint and parse the XML body.

        Args:
            endpoint (str): Path relative to the server URL, e.g. "library/sections"

        Returns:
            ET.Element: The ``MediaContainer`` root element

        Raises:
            PlexTimeoutError: If the request exceeded the configured timeout
            PlexRequestError: On connection errors, non-2xx status or invalid XML
        """
        url = f"{self.config.server_url}/{endpoint.lstrip('/')}"
        session = self._get_session()
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_seconds)

        self.logger.debug(f"GET {url}")
        try:
            async with session.get(url, timeout=timeout) as response:
                body = await response.text()
                if response.status < 200 or response.status >= 300:
                    snippet = (body or "")[:200].replace("\n", " ")
                    raise PlexRequestError(
                        f"Plex request failed with HTTP {response.status} (URL: {url}): {snippet}",
                        url=url,
                        status=response.status,
                    )
        except asyncio.TimeoutError as e:
            raise PlexTimeoutError(
                f"Plex request timed out after {self.config.request_timeout_seconds}s (URL: {url})",
                url=url,
            ) from e
        except aiohttp.ClientError as e:
            raise PlexRequestError(
                f"Plex request failed: {e.__class__.__name__}: {e} (URL: {url})",
                url=url,
            ) from e

        try:
            return ET.fromstring(body)
        except ET.ParseError as e:
            raise PlexRequestError(f"Plex returned invalid XML (URL: {url}): {e}", url=url) from e

    async def _fetch_limited(self, endpoint: str) -> ET.Element:
        """_fetch_xml bounded by the concurrent request limit."""
        async with self._semaphore:
            return await self._fetch_xml(endpoint)

    # ==================== SECTIONS ====================

    async def fetch_sections(self) -> List[LibrarySection]:
        """List all library sections on the server."""
        root = await self._fetch_xml("library/sections")
        return [
            LibrarySection(
                key=directory.get("key") or "",
                title=directory.get("title") or "",
                type=directory.get("type") or "",
            )
            for directory in root.findall("Directory")
        ]

    async def fetch_section_key(self, media_type: str) -> str:
        """
        Return the key of the first library section of the given type.

        Args:
            media_type (str): Plex section type, "movie" or "show"

        Returns:
            str: The section key

        Raises:
            SectionNotFoundError: If no section has that type
        """
        for section in await self.fetch_sections():
            if section.type == media_type and section.key:
                self.logger.debug(f"Using {media_type} section '{section.title}' (key {section.key})")
                return section.key
        raise SectionNotFoundError(media_type)

    # ==================== MOVIES ====================

    async def fetch_movie_batch(self, section_key: Optional[str] = None) -> LibraryFetch:
        """
        Fetch and normalize every movie of a section, keeping track of failures.

        Args:
            section_key (Optional[str]): Section to read; resolved via
                fetch_section_key("movie") when omitted

        Returns:
            LibraryFetch: Normalized movies plus the listed and failed ids

        Raises:
            SectionNotFoundError: If no movie section exists
            PlexRequestError: If the section listing itself fails
        """
        if section_key is None:
            section_key = await self.fetch_section_key("movie")

        root = await self._fetch_xml(f"library/sections/{section_key}/all")
        listed_ids = [video.get("ratingKey") for video in root.findall("Video") if video.get("ratingKey")]
        self.logger.info(f"Plex movie section {section_key} lists {len(listed_ids)} movies")

        results = await asyncio.gather(
            *(self._fetch_movie_detail(rating_key) for rating_key in listed_ids),
            return_exceptions=True
        )

        fetch = LibraryFetch(listed_ids=listed_ids)
        for rating_key, result in zip(listed_ids, results):
            if isinstance(result, Exception):
                self.logger.warning(f"Skipping movie {rating_key}: {result}")
                fetch.failed_ids.append(rating_key)
            else:
                fetch.records.append(result)

        return fetch

    async def fetch_movies(self, section_key: Optional[str] = None) -> List[MovieRecord]:
        """Fetch and normalize every movie; failed items are logged and left out."""
        return (await self.fetch_movie_batch(section_key)).records

    async def _fetch_movie_detail(self, rating_key: str) -> MovieRecord:
        root = await self._fetch_limited(f"library/metadata/{rating_key}")
        video = root.find("Video")
        if video is None:
            raise PlexError(f"Metadata for movie {rating_key} contains no Video node")
        return normalize_movie(video, self.config.audio_languages)

    # ==================== TV SHOWS ====================

    async def fetch_show_batch(self, section_key: Optional[str] = None) -> LibraryFetch:
        """
        Fetch and normalize every show of a section with its seasons and episodes.

        A show whose season or episode listing fails is excluded entirely
        rather than stored with missing seasons.

        Args:
            section_key (Optional[str]): Section to read; resolved via
                fetch_section_key("show") when omitted

        Returns:
            LibraryFetch: Normalized shows plus the listed and failed ids

        Raises:
            SectionNotFoundError: If no show section exists
            PlexRequestError: If the section listing itself fails
        """
        if section_key is None:
            section_key = await self.fetch_section_key("show")

        root = await self._fetch_xml(f"library/sections/{section_key}/all")
        show_nodes = [node for node in root.findall("Directory") if node.get("ratingKey")]
        listed_ids = [node.get("ratingKey") for node in show_nodes]
        self.logger.info(f"Plex show section {section_key} lists {len(listed_ids)} shows")

        results = await asyncio.gather(
            *(self._fetch_show(node) for node in show_nodes),
            return_exceptions=True
        )

        fetch = LibraryFetch(listed_ids=listed_ids)
        for node, result in zip(show_nodes, results):
            if isinstance(result, Exception):
                self.logger.warning(f"Skipping show {node.get('ratingKey')} ('{node.get('title')}'): {result}")
                fetch.failed_ids.append(node.get("ratingKey"))
            else:
                fetch.records.append(result)

        return fetch

    async def fetch_shows(self, section_key: Optional[str] = None) -> List[ShowRecord]:
        """Fetch and normalize every show; failed shows are logged and left out."""
        return (await self.fetch_show_batch(section_key)).records

    async def _fetch_show(self, show: ET.Element) -> ShowRecord:
        rating_key = show.get("ratingKey")
        root = await self._fetch_limited(f"library/metadata/{rating_key}/children")

        seasons = []
        for season in root.findall("Directory"):
            if season.get("title") == ALL_EPISODES_TITLE or not season.get("ratingKey"):
                continue
            seasons.append(await self._fetch_season(season))

        return ShowRecord.build(
            title=show.get("title") or "Unknown",
            year=_safe_int(show.get("year"), None),
            seasons=seasons,
            external_id=rating_key,
        )

    async def _fetch_season(self, season: ET.Element) -> SeasonRecord:
        season_key = season.get("ratingKey")
        season_number = _safe_int(season.get("index"))
        root = await self._fetch_limited(f"library/metadata/{season_key}/children")

        episodes = [normalize_episode(video, season_number) for video in root.findall("Video")]
        return SeasonRecord.build(season_number=season_number, episodes=episodes, external_id=season_key)
