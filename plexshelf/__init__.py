"""
PlexShelf

Plex library viewer and synchronization service. Fetches movie and TV show
catalogs from a Plex Media Server, normalizes them into flat records and
mirrors them into a local SQLite document store.
"""

__version__ = "1.0.0"
