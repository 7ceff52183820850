import asyncio
from unittest.mock import AsyncMock, MagicMock

import aiosqlite
import pytest
from aiohttp import web

from plexshelf.config_models import SyncConfig
from plexshelf.database_manager import DocumentCollection
from plexshelf.library_sync import (
    LibrarySyncService, SyncInProgressError, reconcile, summarize_movies, summarize_shows
)
from plexshelf.media_models import (
    MovieRecord, EpisodeRecord, SeasonRecord, ShowRecord, LibraryFetch
)
from plexshelf.plex_api import SectionNotFoundError


def make_movie(external_id, title, size=1000, resolution="1080p"):
    return MovieRecord(
        title=title,
        title_with_year=f"{title} (2001)",
        year=2001,
        duration_minutes=90,
        duration_formatted="1h 30m",
        file_size_bytes=size,
        resolution=resolution,
        dimensions="1920x1080",
        video_codec="H264",
        audio_streams=[],
        external_id=external_id,
    )


def make_show(external_id, title, episode_sizes_by_season):
    seasons = []
    for season_number, sizes in enumerate(episode_sizes_by_season, start=1):
        episodes = [
            EpisodeRecord(
                title=f"Episode {index}",
                season_number=season_number,
                episode_number=index,
                duration_minutes=30,
                file_size_bytes=size,
                resolution="720",
                video_codec="HEVC",
                external_id=f"{external_id}-{season_number}-{index}",
            )
            for index, size in enumerate(sizes, start=1)
        ]
        seasons.append(SeasonRecord.build(season_number, episodes, f"{external_id}-{season_number}"))
    return ShowRecord.build(title=title, year=2020, seasons=seasons, external_id=external_id)


async def raw_rows(db_manager):
    cursor = await db_manager.connection.execute("SELECT * FROM documents ORDER BY collection, external_id")
    return [tuple(row) for row in await cursor.fetchall()]


@pytest.fixture
def mock_plex():
    plex = MagicMock()
    plex.fetch_movie_batch = AsyncMock(return_value=LibraryFetch())
    plex.fetch_show_batch = AsyncMock(return_value=LibraryFetch())
    return plex


@pytest.fixture
def sync_service(mock_plex, db_manager):
    return LibrarySyncService(mock_plex, db_manager, SyncConfig(timeout_seconds=5))


# ==================== reconcile ====================

@pytest.mark.asyncio
async def test_reconcile_inserts_updates_and_prunes(db_manager):
    movies = db_manager.collection("movies")
    await reconcile([make_movie("1", "A"), make_movie("2", "B"), make_movie("3", "Stale")], movies)

    result = await reconcile([make_movie("1", "A"), make_movie("2", "B", resolution="4K"), make_movie("4", "D")], movies)

    assert (result.inserted, result.updated, result.unchanged, result.pruned) == (1, 1, 1, 1)
    assert await movies.external_ids() == {"1", "2", "4"}
    assert (await movies.get("2"))["resolution"] == "4K"


@pytest.mark.asyncio
@pytest.mark.parametrize("records", [
    [],
    [make_movie("1", "A")],
    [make_movie(str(i), f"Movie {i}", size=i) for i in range(50)],
])
async def test_reconcile_twice_is_a_no_op(db_manager, records):
    movies = db_manager.collection("movies")
    await reconcile(records, movies)
    before = await raw_rows(db_manager)

    result = await reconcile(records, movies)

    assert (result.inserted, result.updated, result.pruned) == (0, 0, 0)
    assert result.unchanged == len(records)
    assert await raw_rows(db_manager) == before


@pytest.mark.asyncio
@pytest.mark.parametrize("stored_ids, upstream_ids", [
    (set(), {"1", "2"}),
    ({"1", "2", "3"}, set()),
    ({"1", "2", "3"}, {"2", "3", "4"}),
    ({"10", "20"}, {"10", "20"}),
    ({str(i) for i in range(30)}, {str(i) for i in range(0, 60, 3)}),
])
async def test_reconcile_leaves_exactly_the_upstream_ids(db_manager, stored_ids, upstream_ids):
    movies = db_manager.collection("movies")
    await reconcile([make_movie(external_id, "Old") for external_id in stored_ids], movies)

    await reconcile([make_movie(external_id, "New") for external_id in upstream_ids], movies)

    assert await movies.external_ids() == upstream_ids


@pytest.mark.asyncio
async def test_reconcile_duplicate_ids_keep_last(db_manager):
    movies = db_manager.collection("movies")

    result = await reconcile([make_movie("1", "First"), make_movie("1", "Second")], movies)

    assert result.inserted == 1
    assert (await movies.get("1"))["title"] == "Second"


@pytest.mark.asyncio
async def test_reconcile_stores_show_aggregates(db_manager):
    shows = db_manager.collection("shows")
    show = make_show("100", "Show", [[10, 20], [30]])

    await reconcile([show], shows)
    stored = await shows.get("100")

    assert stored["season_count"] == 2
    assert stored["episode_count"] == 3
    assert stored["total_file_size_bytes"] == 60
    assert ShowRecord.from_document(stored) == show


@pytest.mark.asyncio
async def test_timed_out_movie_is_absent_and_stale_movie_is_pruned(plex_api, plex_routes, sections_xml, db_manager):
    """Movies 1 and 2 are listed, 2 times out, and stale movie 3 is pruned."""
    async def slow_detail(request):
        await asyncio.sleep(1.0)
        return web.Response(text="<MediaContainer/>", content_type="application/xml")

    plex_routes["/library/sections"] = sections_xml
    plex_routes["/library/sections/1/all"] = (
        '<MediaContainer><Video ratingKey="1" title="A"/><Video ratingKey="2" title="B"/></MediaContainer>'
    )
    plex_routes["/library/metadata/1"] = (
        '<MediaContainer><Video ratingKey="1" title="A" year="1999" duration="5400000">'
        '<Media videoResolution="1080"><Part size="2048"/></Media></Video></MediaContainer>'
    )
    plex_routes["/library/metadata/2"] = slow_detail

    movies = db_manager.collection("movies")
    await reconcile([make_movie("3", "Stale")], movies)

    fetched = await plex_api.fetch_movies()
    await reconcile(fetched, movies)

    assert [movie.external_id for movie in fetched] == ["1"]
    assert await movies.external_ids() == {"1"}


# ==================== LibrarySyncService ====================

@pytest.mark.asyncio
async def test_sync_movies_success(sync_service, mock_plex, db_manager):
    mock_plex.fetch_movie_batch.return_value = LibraryFetch(
        records=[make_movie("1", "A"), make_movie("2", "B")], listed_ids=["1", "2"]
    )

    result = await sync_service.sync_movies()

    assert result.status == "success"
    assert result.success
    assert result.items_fetched == 2
    assert result.items_skipped == 0
    assert result.inserted == 2
    assert await db_manager.collection("movies").external_ids() == {"1", "2"}


@pytest.mark.asyncio
async def test_partial_fetch_keeps_failed_items(sync_service, mock_plex, db_manager):
    """A listed item whose detail fetch failed is neither updated nor pruned."""
    movies = db_manager.collection("movies")
    await reconcile([make_movie("1", "A"), make_movie("2", "B", size=5), make_movie("3", "Gone")], movies)
    mock_plex.fetch_movie_batch.return_value = LibraryFetch(
        records=[make_movie("1", "A")], listed_ids=["1", "2"], failed_ids=["2"]
    )

    result = await sync_service.sync_movies()

    assert result.status == "partial"
    assert result.success
    assert result.items_skipped == 1
    assert result.pruned == 1
    assert "1 skipped" in result.message
    assert await movies.external_ids() == {"1", "2"}
    assert (await movies.get("2"))["file_size_bytes"] == 5


@pytest.mark.asyncio
async def test_section_not_found_reconciles_nothing(sync_service, mock_plex, db_manager):
    movies = db_manager.collection("movies")
    await reconcile([make_movie("1", "A")], movies)
    mock_plex.fetch_movie_batch.side_effect = SectionNotFoundError("movie")

    result = await sync_service.sync_movies()

    assert result.status == "error"
    assert not result.success
    assert result.error_type == "SectionNotFoundError"
    assert await movies.external_ids() == {"1"}


@pytest.mark.asyncio
async def test_overall_timeout_reconciles_nothing(mock_plex, db_manager):
    movies = db_manager.collection("movies")
    await reconcile([make_movie("1", "A")], movies)

    async def hanging_fetch():
        await asyncio.sleep(5)
        return LibraryFetch()

    mock_plex.fetch_movie_batch.side_effect = hanging_fetch
    service = LibrarySyncService(mock_plex, db_manager, SyncConfig(timeout_seconds=0.05))

    result = await service.sync_movies()

    assert result.status == "error"
    assert result.error_type == "SyncTimeoutError"
    assert await movies.external_ids() == {"1"}
    assert not service.is_running("movies")


@pytest.mark.asyncio
async def test_storage_error_is_reported(mocker, sync_service, mock_plex):
    mock_plex.fetch_movie_batch.return_value = LibraryFetch(records=[make_movie("1", "A")], listed_ids=["1"])
    mocker.patch.object(
        DocumentCollection, "apply_snapshot",
        side_effect=aiosqlite.OperationalError("disk I/O error")
    )

    result = await sync_service.sync_movies()

    assert result.status == "error"
    assert result.error_type == "OperationalError"
    assert "disk I/O error" in result.message


@pytest.mark.asyncio
async def test_concurrent_sync_of_same_type_is_rejected(sync_service, mock_plex):
    started = asyncio.Event()
    release = asyncio.Event()

    async def blocked_fetch():
        started.set()
        await release.wait()
        return LibraryFetch(records=[make_movie("1", "A")], listed_ids=["1"])

    mock_plex.fetch_movie_batch.side_effect = blocked_fetch

    first = asyncio.create_task(sync_service.sync_movies())
    await started.wait()

    assert sync_service.is_running("movies")
    with pytest.raises(SyncInProgressError):
        await sync_service.sync_movies()

    # Shows have their own lock
    shows_result = await sync_service.sync_shows()
    assert shows_result.status == "success"

    release.set()
    result = await first

    assert result.status == "success"
    assert not sync_service.is_running("movies")
    assert mock_plex.fetch_movie_batch.await_count == 1


@pytest.mark.asyncio
async def test_sync_history_and_status(sync_service, mock_plex):
    mock_plex.fetch_show_batch.return_value = LibraryFetch(records=[make_show("9", "S", [[1]])], listed_ids=["9"])

    await sync_service.sync_shows()
    history = await sync_service.get_history()
    status = await sync_service.get_status()

    assert history[0]["entity_type"] == "shows"
    assert history[0]["status"] == "success"
    assert history[0]["inserted"] == 1
    assert status["shows"]["last_sync"]["id"] == history[0]["id"]
    assert status["movies"] == {"in_progress": False, "last_sync": None}


@pytest.mark.asyncio
async def test_sync_result_to_dict(sync_service, mock_plex):
    result = await sync_service.sync_movies()

    data = result.to_dict()

    assert data["success"] is True
    assert data["entity_type"] == "movies"
    assert data["error_type"] is None


# ==================== Statistics ====================

@pytest.mark.asyncio
async def test_summarize_movies(db_manager):
    movies = db_manager.collection("movies")
    await reconcile([make_movie("1", "A", size=1024 ** 4), make_movie("2", "B", size=1024 ** 4 // 2)], movies)

    stats = await summarize_movies(movies)

    assert stats == {"total_count": 2, "total_size_bytes": 1024 ** 4 * 3 // 2, "total_size": "1.50 TB"}


@pytest.mark.asyncio
async def test_summarize_shows(db_manager):
    shows = db_manager.collection("shows")
    assert (await summarize_shows(shows))["total_size"] == "0 GB"

    await reconcile([make_show("1", "A", [[1024 ** 3, 1024 ** 3]]), make_show("2", "B", [[1024 ** 3], [0]])], shows)
    stats = await summarize_shows(shows)

    assert stats["total_shows"] == 2
    assert stats["total_episodes"] == 4
    assert stats["total_size"] == "3 GB"
