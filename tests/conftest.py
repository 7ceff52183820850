import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from plexshelf.config_models import PlexConfig, DatabaseConfig
from plexshelf.database_manager import DatabaseManager
from plexshelf.plex_api import PlexAPI


SECTIONS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<MediaContainer size="3">
  <Directory key="1" type="movie" title="Movies"/>
  <Directory key="2" type="show" title="TV Shows"/>
  <Directory key="3" type="artist" title="Music"/>
</MediaContainer>"""


@pytest.fixture
def sections_xml():
    return SECTIONS_XML


@pytest.fixture
def plex_routes():
    """
    Path -> response for the fake Plex server.

    A value is either an XML string or an async aiohttp handler. Tests fill
    this dict before making requests.
    """
    return {}


@pytest.fixture
def plex_requests():
    """Requests received by the fake Plex server, in arrival order."""
    return []


@pytest_asyncio.fixture
async def plex_server(plex_routes, plex_requests):
    """An in-process HTTP server answering like a Plex Media Server."""
    async def handler(request):
        plex_requests.append(request)
        route = plex_routes.get(request.path)
        if route is None:
            return web.Response(status=404, text="Not Found")
        if callable(route):
            return await route(request)
        return web.Response(text=route, content_type="application/xml")

    app = web.Application()
    app.router.add_get("/{tail:.*}", handler)
    server = TestServer(app)
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
def plex_config(plex_server):
    return PlexConfig(
        server_url=f"http://{plex_server.host}:{plex_server.port}",
        token="test-token",
        request_timeout_seconds=0.3,
    )


@pytest_asyncio.fixture
async def plex_api(plex_config):
    """PlexAPI connected to the fake server."""
    api = PlexAPI(plex_config)
    await api.initialize()
    yield api
    await api.close()


@pytest.fixture
def offline_plex_config():
    """Config for tests that stub out the HTTP layer."""
    return PlexConfig(server_url="http://plex.invalid:32400", token="test-token")


@pytest_asyncio.fixture
async def db_manager(tmp_path):
    """A real SQLite database in a temporary directory."""
    manager = DatabaseManager(DatabaseConfig(path=str(tmp_path / "plexshelf.db")))
    await manager.initialize()
    yield manager
    await manager.close()
