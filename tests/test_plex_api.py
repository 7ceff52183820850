import asyncio
import xml.etree.ElementTree as ET

import pytest
from aiohttp import web

from plexshelf.media_models import AudioStream
from plexshelf.plex_api import (
    PlexAPI, PlexRequestError, PlexTimeoutError, SectionNotFoundError,
    normalize_movie, normalize_episode, normalize_resolution, milliseconds_to_minutes
)


MOVIE_DETAIL_XML = """<?xml version="1.0" encoding="UTF-8"?>
<MediaContainer size="1">
  <Video ratingKey="{key}" title="{title}" year="2010" duration="8130000" type="movie">
    <Media videoResolution="1080" width="1920" height="1080" videoCodec="h264">
      <Part size="123456789" file="/movies/{title}.mkv">
        <Stream streamType="1" codec="h264"/>
        <Stream streamType="2" codec="ac3" channels="6" language="English" languageCode="eng"/>
        <Stream streamType="2" codec="aac" language="Italiano" languageCode="ita"/>
        <Stream streamType="2" codec="dts" channels="6" language="Francais" languageCode="fra"/>
        <Stream streamType="3" codec="srt" language="English" languageCode="eng"/>
      </Part>
    </Media>
  </Video>
</MediaContainer>"""


def movie_detail(key, title):
    return MOVIE_DETAIL_XML.format(key=key, title=title)


def movie_listing(*movies):
    videos = "".join(f'<Video ratingKey="{key}" title="{title}" type="movie"/>' for key, title in movies)
    return f'<MediaContainer size="{len(movies)}">{videos}</MediaContainer>'


def show_listing(*shows):
    directories = "".join(
        f'<Directory ratingKey="{key}" title="{title}" year="2020" type="show" leafCount="999"/>'
        for key, title in shows
    )
    return f'<MediaContainer size="{len(shows)}">{directories}</MediaContainer>'


def season_listing(*seasons, with_all_episodes=True):
    nodes = '<Directory ratingKey="999" title="All episodes" leafCount="50"/>' if with_all_episodes else ""
    nodes += "".join(f'<Directory ratingKey="{key}" index="{index}" title="Season {index}"/>' for key, index in seasons)
    return f'<MediaContainer>{nodes}</MediaContainer>'


def episode_listing(*episodes):
    videos = "".join(
        f'<Video ratingKey="{key}" index="{index}" title="Episode {index}" duration="{duration}">'
        f'<Media videoResolution="720" videoCodec="hevc"><Part size="{size}"/></Media></Video>'
        for key, index, duration, size in episodes
    )
    return f'<MediaContainer>{videos}</MediaContainer>'


async def slow_response(request):
    await asyncio.sleep(1.0)
    return web.Response(text="<MediaContainer/>", content_type="application/xml")


# ==================== Normalization ====================

def test_normalize_movie_maps_all_fields():
    """A complete movie node normalizes every derived field."""
    video = ET.fromstring(movie_detail("42", "Inception")).find("Video")

    movie = normalize_movie(video, ["eng", "ita"])

    assert movie.external_id == "42"
    assert movie.title == "Inception"
    assert movie.title_with_year == "Inception (2010)"
    assert movie.year == 2010
    assert movie.duration_minutes == 136  # 135.5 minutes rounds up
    assert movie.duration_formatted == "2h 16m"
    assert movie.file_size_bytes == 123456789
    assert movie.resolution == "1080p"
    assert movie.dimensions == "1920x1080"
    assert movie.video_codec == "H264"
    assert movie.audio_streams == [
        AudioStream(language="English", codec="AC3", channels=6),
        AudioStream(language="Italiano", codec="AAC", channels=2),
    ]


def test_normalize_movie_defaults_missing_fields():
    """Missing media, year and duration fall back to defaults instead of raising."""
    video = ET.fromstring('<Video ratingKey="9" title="Bare"/>')

    movie = normalize_movie(video, ["eng"])

    assert movie.year is None
    assert movie.title_with_year == "Bare"
    assert movie.duration_minutes == 0
    assert movie.duration_formatted == "0m"
    assert movie.file_size_bytes == 0
    assert movie.resolution == "Unknown"
    assert movie.dimensions == "Unknown"
    assert movie.video_codec == "Unknown"
    assert movie.audio_streams == []


def test_normalize_movie_partial_dimensions_and_bad_numbers():
    video = ET.fromstring(
        '<Video ratingKey="7" title="Odd" year="abc" duration="">'
        '<Media width="1280"><Part size="oops"/></Media></Video>'
    )

    movie = normalize_movie(video, ["eng"])

    assert movie.dimensions == "1280x?"
    assert movie.year is None
    assert movie.file_size_bytes == 0


def test_normalize_movie_uses_configured_languages():
    video = ET.fromstring(movie_detail("1", "Amelie")).find("Video")

    movie = normalize_movie(video, ["fra"])

    assert movie.audio_streams == [AudioStream(language="Francais", codec="DTS", channels=6)]


def test_normalize_movie_without_rating_key_is_rejected():
    video = ET.fromstring('<Video title="No Key"/>')

    with pytest.raises(ValueError):
        normalize_movie(video, ["eng"])


@pytest.mark.parametrize("value, expected", [
    ("1080", "1080p"),
    ("720", "720"),
    ("4k", "4K"),
    ("sd", "SD"),
    (None, "Unknown"),
    ("", "Unknown"),
])
def test_normalize_resolution(value, expected):
    assert normalize_resolution(value) == expected


@pytest.mark.parametrize("milliseconds, minutes", [
    (0, 0),
    (29999, 0),
    (30000, 1),
    (2700000, 45),
    (-5, 0),
])
def test_milliseconds_to_minutes(milliseconds, minutes):
    assert milliseconds_to_minutes(milliseconds) == minutes


def test_normalize_episode():
    video = ET.fromstring(
        '<Video ratingKey="501" index="3" title="Pilot" duration="1800000">'
        '<Media videoResolution="1080" videoCodec="h264"><Part size="1000"/></Media></Video>'
    )

    episode = normalize_episode(video, season_number=2)

    assert episode.external_id == "501"
    assert episode.season_number == 2
    assert episode.episode_number == 3
    assert episode.duration_minutes == 30
    assert episode.file_size_bytes == 1000
    assert episode.resolution == "1080p"
    assert episode.video_codec == "H264"


# ==================== HTTP layer ====================

@pytest.mark.asyncio
async def test_requests_carry_plex_headers(plex_api, plex_routes, plex_requests, sections_xml):
    plex_routes["/library/sections"] = sections_xml

    await plex_api.fetch_sections()

    headers = plex_requests[0].headers
    assert headers["X-Plex-Token"] == "test-token"
    assert headers["X-Plex-Client-Identifier"] == "PlexShelf"
    assert headers["Accept"] == "application/xml"


@pytest.mark.asyncio
async def test_fetch_section_key_returns_first_matching_section(plex_api, plex_routes, sections_xml):
    plex_routes["/library/sections"] = sections_xml

    assert await plex_api.fetch_section_key("movie") == "1"
    assert await plex_api.fetch_section_key("show") == "2"


@pytest.mark.asyncio
async def test_fetch_section_key_missing_section(plex_api, plex_routes):
    plex_routes["/library/sections"] = '<MediaContainer><Directory key="3" type="artist"/></MediaContainer>'

    with pytest.raises(SectionNotFoundError) as exc_info:
        await plex_api.fetch_section_key("movie")

    assert exc_info.value.media_type == "movie"
    assert "No movie section found" in str(exc_info.value)


@pytest.mark.asyncio
async def test_request_timeout_includes_url(plex_api, plex_routes, plex_config):
    plex_routes["/library/sections"] = slow_response

    with pytest.raises(PlexTimeoutError) as exc_info:
        await plex_api.fetch_sections()

    assert f"{plex_config.server_url}/library/sections" in str(exc_info.value)


@pytest.mark.asyncio
async def test_http_error_includes_status_and_url(plex_api, plex_routes, plex_config):
    async def server_error(request):
        return web.Response(status=500, text="boom")

    plex_routes["/library/sections"] = server_error

    with pytest.raises(PlexRequestError) as exc_info:
        await plex_api.fetch_sections()

    assert exc_info.value.status == 500
    assert exc_info.value.url == f"{plex_config.server_url}/library/sections"
    assert "HTTP 500" in str(exc_info.value)


@pytest.mark.asyncio
async def test_invalid_xml_raises_request_error(plex_api, plex_routes):
    plex_routes["/library/sections"] = "<MediaContainer><Directory"

    with pytest.raises(PlexRequestError, match="invalid XML"):
        await plex_api.fetch_sections()


# ==================== Movies ====================

@pytest.mark.asyncio
async def test_fetch_movies_skips_timed_out_detail(plex_api, plex_routes, sections_xml):
    """Movie 2's detail fetch times out; only movie 1 is returned."""
    plex_routes["/library/sections"] = sections_xml
    plex_routes["/library/sections/1/all"] = movie_listing(("1", "A"), ("2", "B"))
    plex_routes["/library/metadata/1"] = movie_detail("1", "A")
    plex_routes["/library/metadata/2"] = slow_response

    movies = await plex_api.fetch_movies()

    assert [movie.external_id for movie in movies] == ["1"]
    assert movies[0].title == "A"


@pytest.mark.asyncio
async def test_fetch_movie_batch_reports_listed_and_failed_ids(plex_api, plex_routes, sections_xml):
    plex_routes["/library/sections"] = sections_xml
    plex_routes["/library/sections/1/all"] = movie_listing(("1", "A"), ("2", "B"), ("3", "C"))
    plex_routes["/library/metadata/1"] = movie_detail("1", "A")
    plex_routes["/library/metadata/3"] = movie_detail("3", "C")
    # /library/metadata/2 answers 404

    fetch = await plex_api.fetch_movie_batch()

    assert fetch.listed_ids == ["1", "2", "3"]
    assert fetch.failed_ids == ["2"]
    assert fetch.skipped_count == 1
    assert not fetch.complete
    assert sorted(movie.external_id for movie in fetch.records) == ["1", "3"]


@pytest.mark.asyncio
async def test_fetch_movies_with_explicit_section_skips_lookup(plex_api, plex_routes, plex_requests):
    plex_routes["/library/sections/7/all"] = movie_listing(("1", "A"))
    plex_routes["/library/metadata/1"] = movie_detail("1", "A")

    movies = await plex_api.fetch_movies(section_key="7")

    assert len(movies) == 1
    assert "/library/sections" not in [request.path for request in plex_requests]


@pytest.mark.asyncio
async def test_fetch_movies_empty_section(plex_api, plex_routes, sections_xml):
    plex_routes["/library/sections"] = sections_xml
    plex_routes["/library/sections/1/all"] = '<MediaContainer size="0"/>'

    fetch = await plex_api.fetch_movie_batch()

    assert fetch.records == []
    assert fetch.complete


@pytest.mark.asyncio
async def test_fetch_movies_listing_failure_propagates(plex_api, plex_routes, sections_xml):
    plex_routes["/library/sections"] = sections_xml
    plex_routes["/library/sections/1/all"] = slow_response

    with pytest.raises(PlexTimeoutError):
        await plex_api.fetch_movies()


# ==================== Shows ====================

@pytest.mark.asyncio
async def test_fetch_shows_excludes_all_episodes_season(plex_api, plex_routes, sections_xml):
    plex_routes["/library/sections"] = sections_xml
    plex_routes["/library/sections/2/all"] = show_listing(("100", "Show A"))
    plex_routes["/library/metadata/100/children"] = season_listing(("101", 1))
    plex_routes["/library/metadata/101/children"] = episode_listing(
        ("1001", 1, 1500000, 100),
        ("1002", 2, 1560000, 250),
    )

    shows = await plex_api.fetch_shows()

    assert len(shows) == 1
    show = shows[0]
    assert show.season_count == 1
    assert show.episode_count == 2
    assert show.total_file_size_bytes == 350
    assert show.total_duration_minutes == 25 + 26
    assert [season.season_number for season in show.seasons] == [1]
    assert [episode.external_id for episode in show.seasons[0].episodes] == ["1001", "1002"]


@pytest.mark.asyncio
async def test_fetch_shows_aggregates_are_bottom_up(plex_api, plex_routes, sections_xml):
    """Show totals come from episodes, not from the show node's leafCount."""
    plex_routes["/library/sections"] = sections_xml
    plex_routes["/library/sections/2/all"] = show_listing(("100", "Show A"))
    plex_routes["/library/metadata/100/children"] = season_listing(("101", 1), ("102", 2))
    plex_routes["/library/metadata/101/children"] = episode_listing(("1", 1, 60000, 10), ("2", 2, 60000, 20))
    plex_routes["/library/metadata/102/children"] = episode_listing(("3", 1, 120000, 30))

    show = (await plex_api.fetch_shows())[0]

    assert show.episode_count == sum(season.episode_count for season in show.seasons) == 3
    for season in show.seasons:
        assert season.episode_count == len(season.episodes)
    assert show.total_file_size_bytes == sum(
        episode.file_size_bytes for season in show.seasons for episode in season.episodes
    ) == 60
    assert show.seasons[1].episodes[0].season_number == 2


@pytest.mark.asyncio
async def test_fetch_shows_isolates_failing_show(plex_api, plex_routes, sections_xml):
    """If show B fails mid-hierarchy, A and C are still returned and B is absent."""
    plex_routes["/library/sections"] = sections_xml
    plex_routes["/library/sections/2/all"] = show_listing(("100", "A"), ("200", "B"), ("300", "C"))
    plex_routes["/library/metadata/100/children"] = season_listing(("101", 1))
    plex_routes["/library/metadata/101/children"] = episode_listing(("1", 1, 60000, 10))
    plex_routes["/library/metadata/200/children"] = season_listing(("201", 1))
    plex_routes["/library/metadata/201/children"] = slow_response
    plex_routes["/library/metadata/300/children"] = season_listing(("301", 1))
    plex_routes["/library/metadata/301/children"] = episode_listing(("3", 1, 60000, 30))

    fetch = await plex_api.fetch_show_batch()

    assert [show.title for show in fetch.records] == ["A", "C"]
    assert None not in fetch.records
    assert fetch.failed_ids == ["200"]
    assert fetch.listed_ids == ["100", "200", "300"]


@pytest.mark.asyncio
async def test_fetch_shows_with_stubbed_transport(mocker, offline_plex_config):
    """The XML walk can be exercised without HTTP by stubbing _fetch_xml."""
    responses = {
        "library/sections": ET.fromstring('<MediaContainer><Directory key="5" type="show"/></MediaContainer>'),
        "library/sections/5/all": ET.fromstring(show_listing(("10", "Solo"))),
        "library/metadata/10/children": ET.fromstring(
            '<MediaContainer>'
            '<Directory ratingKey="11" title="All episodes"/>'
            '<Directory ratingKey="12" index="1" title="Season 1"/>'
            '</MediaContainer>'
        ),
        "library/metadata/12/children": ET.fromstring(episode_listing(("13", 1, 60000, 5), ("14", 2, 60000, 5))),
    }

    async def fake_fetch(endpoint):
        return responses[endpoint]

    api = PlexAPI(offline_plex_config)
    mocker.patch.object(api, "_fetch_xml", side_effect=fake_fetch)

    shows = await api.fetch_shows()

    assert shows[0].season_count == 1
    assert shows[0].episode_count == 2
