#!/usr/bin/env python3
"""
PlexShelf Web API

This module exposes the library over HTTP with FastAPI: listings and
statistics for stored movies and shows, sync triggers, sync history, the
per-user diary, therapy notes and transaction ledger, account endpoints
and a health check.

All long-lived components (database manager, Plex client, sync service, auth
service) are built in the application lifespan and attached to
``app.state``; endpoints reach them through small dependency functions.

Endpoints (everything except /health, register and login needs a Bearer token):
    GET    /health                       Service and database status
    POST   /api/auth/register            Create an account
    POST   /api/auth/login               Exchange credentials for an access token
    GET    /api/auth/me                  Current user profile
    PUT    /api/auth/change-password     Replace the password after checking the current one
    PUT    /api/auth/update-profile      Change the display name
    DELETE /api/auth/delete-account      Delete the account and all personal records
    GET    /api/movies                   Stored movies sorted by title
    GET    /api/movies/stats             Movie count and total size
    POST   /api/movies/sync              Sync movies from Plex
    GET    /api/tvshows                  Stored shows sorted by title
    GET    /api/tvshows/stats            Show and episode counts and total size
    POST   /api/tvshows/sync             Sync shows from Plex
    GET    /api/sync/status              Running flag and last run per entity type
    GET    /api/sync/history             Recent sync runs
    GET    /api/diary                    Diary entries, with optional search and category filter
    POST   /api/diary                    Create a diary entry
    PUT    /api/diary/{id}               Replace a diary entry
    DELETE /api/diary/{id}               Delete a diary entry
    GET    /api/notes                    Therapy notes by session date
    POST   /api/notes                    Create a note
    PUT    /api/notes/{id}               Replace a note
    DELETE /api/notes/{id}               Delete a note
    GET    /api/transactions             Ledger transactions by date
    POST   /api/transactions             Record a transaction
    PUT    /api/transactions/{id}        Replace a transaction
    DELETE /api/transactions/{id}        Delete a transaction

Project: PlexShelf
Version: 1.0.0
License: MIT
"""

import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from fastapi import FastAPI, Depends, HTTPException, Request, Security, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, Field

from . import __version__
from .auth import AccountError, AuthService, AuthenticatedUser, AuthenticationError, RegistrationError
from .config_models import AppConfig, ConfigurationValidator
from .database_manager import DatabaseManager, MOVIES_COLLECTION, SHOWS_COLLECTION
from .library_sync import (
    LibrarySyncService, SyncInProgressError, SyncResult, summarize_movies, summarize_shows,
    ENTITY_MOVIES, ENTITY_SHOWS
)
from .personal_records import PersonalRecordService, RecordNotFoundError
from .plex_api import PlexAPI
from .record_models import DiaryEntryInput, TherapyNoteInput, TransactionInput
from .utils import get_logger, setup_logging


logger = get_logger("plexshelf.api")

security = HTTPBearer(auto_error=False)

# error_type of a failed SyncResult -> HTTP status
SYNC_ERROR_STATUS = {
    'SectionNotFoundError': status.HTTP_502_BAD_GATEWAY,
    'PlexError': status.HTTP_502_BAD_GATEWAY,
    'PlexRequestError': status.HTTP_502_BAD_GATEWAY,
    'PlexTimeoutError': status.HTTP_502_BAD_GATEWAY,
    'SyncTimeoutError': status.HTTP_504_GATEWAY_TIMEOUT,
}


# ==================== Request / Response Models ====================

class CredentialsRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=128)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class RegisterRequest(CredentialsRequest):
    name: Optional[str] = Field(default=None, max_length=100)


class UserResponse(BaseModel):
    id: int
    username: str
    name: str


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=1, max_length=128)


class UpdateProfileRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


# ==================== Dependencies ====================

def get_sync_service(request: Request) -> LibrarySyncService:
    service = getattr(request.app.state, 'sync_service', None)
    if service is None:
        raise HTTPException(status_code=503, detail="Service not ready - still initializing")
    return service


def get_db_manager(request: Request) -> DatabaseManager:
    db_manager = getattr(request.app.state, 'db_manager', None)
    if db_manager is None:
        raise HTTPException(status_code=503, detail="Service not ready - still initializing")
    return db_manager


def get_auth_service(request: Request) -> AuthService:
    auth_service = getattr(request.app.state, 'auth_service', None)
    if auth_service is None:
        raise HTTPException(status_code=503, detail="Service not ready - still initializing")
    return auth_service


def get_record_service(request: Request) -> PersonalRecordService:
    record_service = getattr(request.app.state, 'record_service', None)
    if record_service is None:
        raise HTTPException(status_code=503, detail="Service not ready - still initializing")
    return record_service


async def require_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
    auth_service: AuthService = Depends(get_auth_service),
) -> AuthenticatedUser:
    """Resolve the Bearer token to a user or reject the request with 401."""
    token = credentials.credentials if credentials else None
    user = await auth_service.resolve_user(token)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


# ==================== Helpers ====================

async def _run_sync(sync_service: LibrarySyncService, entity_type: str, user: AuthenticatedUser) -> JSONResponse:
    logger.info(f"{entity_type.capitalize()} sync requested by '{user.username}'")
    try:
        result: SyncResult = await sync_service.sync(entity_type)
    except SyncInProgressError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    if result.success:
        return JSONResponse(status_code=200, content=result.to_dict())

    status_code = SYNC_ERROR_STATUS.get(result.error_type, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(status_code=status_code, content=result.to_dict())


def _not_found(e: RecordNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _load_config() -> AppConfig:
    config_path = os.getenv("CONFIG_PATH", "/app/config/config.yaml")
    return ConfigurationValidator().load_and_validate_config(config_path)


# ==================== Application ====================

def create_app(app_config: Optional[AppConfig] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        app_config (Optional[AppConfig]): Configuration to use. When omitted
            the lifespan loads it with ConfigurationValidator from the path in
            the CONFIG_PATH environment variable.

    Returns:
        FastAPI: The application, ready to be served by uvicorn
    """

    @asynccontextmanager
    async def lifespan(app_instance: FastAPI):
        """
        Startup and shutdown of the service components.

        Everything before ``yield`` runs at startup: configuration, logging,
        the database connection, the Plex client and the services built on
        them. Everything after runs at shutdown and releases the connection
        and the HTTP session.
        """
        config = app_config or _load_config()
        setup_logging(log_level=config.server.log_level, log_dir=config.server.log_dir)
        logger.info(f"Starting PlexShelf {__version__}...")

        db_manager = DatabaseManager(config.database)
        await db_manager.initialize()

        plex_api = PlexAPI(config.plex)
        await plex_api.initialize()

        app_instance.state.config = config
        app_instance.state.db_manager = db_manager
        app_instance.state.plex_api = plex_api
        app_instance.state.sync_service = LibrarySyncService(plex_api, db_manager, config.sync)
        app_instance.state.auth_service = AuthService(config.auth, db_manager)
        app_instance.state.record_service = PersonalRecordService(db_manager)

        logger.info("=" * 60)
        logger.info("PlexShelf is ready")
        logger.info(f"Plex server: {config.plex.server_url}")
        logger.info("=" * 60)

        try:
            yield
        finally:
            logger.info("Shutting down PlexShelf...")
            app_instance.state.sync_service = None
            app_instance.state.auth_service = None
            app_instance.state.record_service = None
            await plex_api.close()
            await db_manager.close()
            app_instance.state.db_manager = None
            logger.info("Shutdown complete")

    app = FastAPI(
        title="PlexShelf",
        description="Plex library viewer and synchronization service",
        version=__version__,
        lifespan=lifespan
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.debug(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f}ms)")
        return response

    # ---------- Health ----------

    @app.get("/health")
    async def health_check(request: Request):
        """Report readiness; 503 until the database answers."""
        db_manager = getattr(request.app.state, 'db_manager', None)
        database_ok = bool(db_manager) and await db_manager.health_check()
        health_data = {
            "status": "healthy" if database_ok else "unhealthy",
            "version": __version__,
            "database": "ok" if database_ok else "unavailable",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return JSONResponse(status_code=200 if database_ok else 503, content=health_data)

    # ---------- Auth ----------

    @app.post("/api/auth/register", response_model=UserResponse, status_code=201)
    async def register(body: RegisterRequest, auth_service: AuthService = Depends(get_auth_service)):
        try:
            user = await auth_service.register(body.username, body.password, name=body.name)
        except RegistrationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return await auth_service.get_profile(user)

    @app.post("/api/auth/login", response_model=TokenResponse)
    async def login(body: CredentialsRequest, auth_service: AuthService = Depends(get_auth_service)):
        try:
            token = await auth_service.authenticate(body.username, body.password)
        except AuthenticationError as e:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=str(e),
                headers={"WWW-Authenticate": "Bearer"},
            )
        return TokenResponse(access_token=token)

    @app.get("/api/auth/me", response_model=UserResponse)
    async def current_user(
        user: AuthenticatedUser = Depends(require_user),
        auth_service: AuthService = Depends(get_auth_service),
    ):
        return await auth_service.get_profile(user)

    @app.put("/api/auth/change-password")
    async def change_password(
        body: ChangePasswordRequest,
        user: AuthenticatedUser = Depends(require_user),
        auth_service: AuthService = Depends(get_auth_service),
    ) -> Dict[str, str]:
        try:
            await auth_service.change_password(user, body.current_password, body.new_password)
        except AccountError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"message": "Password updated successfully"}

    @app.put("/api/auth/update-profile", response_model=UserResponse)
    async def update_profile(
        body: UpdateProfileRequest,
        user: AuthenticatedUser = Depends(require_user),
        auth_service: AuthService = Depends(get_auth_service),
    ):
        try:
            return await auth_service.update_profile(user, body.name)
        except AccountError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.delete("/api/auth/delete-account")
    async def delete_account(
        user: AuthenticatedUser = Depends(require_user),
        auth_service: AuthService = Depends(get_auth_service),
    ) -> Dict[str, str]:
        """Delete the caller's account and every personal record; its tokens stop working."""
        try:
            await auth_service.delete_account(user)
        except AccountError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"message": "Account deleted successfully"}

    # ---------- Movies ----------

    @app.get("/api/movies", dependencies=[Depends(require_user)])
    async def list_movies(db_manager: DatabaseManager = Depends(get_db_manager)) -> List[Dict[str, Any]]:
        return await db_manager.collection(MOVIES_COLLECTION).find_all()

    @app.get("/api/movies/stats", dependencies=[Depends(require_user)])
    async def movie_stats(db_manager: DatabaseManager = Depends(get_db_manager)) -> Dict[str, Any]:
        return await summarize_movies(db_manager.collection(MOVIES_COLLECTION))

    @app.post("/api/movies/sync")
    async def sync_movies(
        user: AuthenticatedUser = Depends(require_user),
        sync_service: LibrarySyncService = Depends(get_sync_service),
    ):
        """
        Sync movies from Plex into the local collection.

        Returns the SyncResult. Status codes: 200 for success or partial
        (check ``items_skipped``), 409 when a movie sync is already running,
        502 when Plex cannot be read, 504 on the overall timeout and 500 when
        the storage transaction failed.
        """
        return await _run_sync(sync_service, ENTITY_MOVIES, user)

    # ---------- TV shows ----------

    @app.get("/api/tvshows", dependencies=[Depends(require_user)])
    async def list_shows(db_manager: DatabaseManager = Depends(get_db_manager)) -> List[Dict[str, Any]]:
        return await db_manager.collection(SHOWS_COLLECTION).find_all()

    @app.get("/api/tvshows/stats", dependencies=[Depends(require_user)])
    async def show_stats(db_manager: DatabaseManager = Depends(get_db_manager)) -> Dict[str, Any]:
        return await summarize_shows(db_manager.collection(SHOWS_COLLECTION))

    @app.post("/api/tvshows/sync")
    async def sync_shows(
        user: AuthenticatedUser = Depends(require_user),
        sync_service: LibrarySyncService = Depends(get_sync_service),
    ):
        """Sync shows from Plex; same status codes as the movie sync."""
        return await _run_sync(sync_service, ENTITY_SHOWS, user)

    # ---------- Sync status ----------

    @app.get("/api/sync/status", dependencies=[Depends(require_user)])
    async def sync_status(sync_service: LibrarySyncService = Depends(get_sync_service)) -> Dict[str, Any]:
        return await sync_service.get_status()

    @app.get("/api/sync/history", dependencies=[Depends(require_user)])
    async def sync_history(
        limit: Optional[int] = None,
        sync_service: LibrarySyncService = Depends(get_sync_service),
    ) -> List[Dict[str, Any]]:
        if limit is not None and not 1 <= limit <= 1000:
            raise HTTPException(status_code=400, detail="limit must be between 1 and 1000")
        return await sync_service.get_history(limit)

    # ---------- Diary ----------

    @app.get("/api/diary")
    async def list_diary_entries(
        search: Optional[str] = None,
        category: Optional[str] = None,
        user: AuthenticatedUser = Depends(require_user),
        records: PersonalRecordService = Depends(get_record_service),
    ) -> List[Dict[str, Any]]:
        return await records.list_diary_entries(user.id, search=search, category=category)

    @app.post("/api/diary", status_code=201)
    async def create_diary_entry(
        body: DiaryEntryInput,
        user: AuthenticatedUser = Depends(require_user),
        records: PersonalRecordService = Depends(get_record_service),
    ) -> Dict[str, Any]:
        return await records.create_diary_entry(user.id, body)

    @app.put("/api/diary/{entry_id}")
    async def update_diary_entry(
        entry_id: int,
        body: DiaryEntryInput,
        user: AuthenticatedUser = Depends(require_user),
        records: PersonalRecordService = Depends(get_record_service),
    ) -> Dict[str, Any]:
        try:
            return await records.update_diary_entry(user.id, entry_id, body)
        except RecordNotFoundError as e:
            raise _not_found(e)

    @app.delete("/api/diary/{entry_id}")
    async def delete_diary_entry(
        entry_id: int,
        user: AuthenticatedUser = Depends(require_user),
        records: PersonalRecordService = Depends(get_record_service),
    ) -> Dict[str, str]:
        try:
            await records.delete_diary_entry(user.id, entry_id)
        except RecordNotFoundError as e:
            raise _not_found(e)
        return {"message": "Diary entry deleted"}

    # ---------- Therapy notes ----------

    @app.get("/api/notes")
    async def list_notes(
        user: AuthenticatedUser = Depends(require_user),
        records: PersonalRecordService = Depends(get_record_service),
    ) -> List[Dict[str, Any]]:
        return await records.list_notes(user.id)

    @app.post("/api/notes", status_code=201)
    async def create_note(
        body: TherapyNoteInput,
        user: AuthenticatedUser = Depends(require_user),
        records: PersonalRecordService = Depends(get_record_service),
    ) -> Dict[str, Any]:
        return await records.create_note(user.id, body)

    @app.put("/api/notes/{note_id}")
    async def update_note(
        note_id: int,
        body: TherapyNoteInput,
        user: AuthenticatedUser = Depends(require_user),
        records: PersonalRecordService = Depends(get_record_service),
    ) -> Dict[str, Any]:
        try:
            return await records.update_note(user.id, note_id, body)
        except RecordNotFoundError as e:
            raise _not_found(e)

    @app.delete("/api/notes/{note_id}")
    async def delete_note(
        note_id: int,
        user: AuthenticatedUser = Depends(require_user),
        records: PersonalRecordService = Depends(get_record_service),
    ) -> Dict[str, str]:
        try:
            await records.delete_note(user.id, note_id)
        except RecordNotFoundError as e:
            raise _not_found(e)
        return {"message": "Note deleted"}

    # ---------- Transactions ----------

    @app.get("/api/transactions")
    async def list_transactions(
        user: AuthenticatedUser = Depends(require_user),
        records: PersonalRecordService = Depends(get_record_service),
    ) -> List[Dict[str, Any]]:
        return await records.list_transactions(user.id)

    @app.post("/api/transactions", status_code=201)
    async def create_transaction(
        body: TransactionInput,
        user: AuthenticatedUser = Depends(require_user),
        records: PersonalRecordService = Depends(get_record_service),
    ) -> Dict[str, Any]:
        return await records.create_transaction(user.id, body)

    @app.put("/api/transactions/{transaction_id}")
    async def update_transaction(
        transaction_id: int,
        body: TransactionInput,
        user: AuthenticatedUser = Depends(require_user),
        records: PersonalRecordService = Depends(get_record_service),
    ) -> Dict[str, Any]:
        try:
            return await records.update_transaction(user.id, transaction_id, body)
        except RecordNotFoundError as e:
            raise _not_found(e)

    @app.delete("/api/transactions/{transaction_id}")
    async def delete_transaction(
        transaction_id: int,
        user: AuthenticatedUser = Depends(require_user),
        records: PersonalRecordService = Depends(get_record_service),
    ) -> Dict[str, str]:
        try:
            await records.delete_transaction(user.id, transaction_id)
        except RecordNotFoundError as e:
            raise _not_found(e)
        return {"message": "Transaction deleted"}

    # ---------- Error handlers ----------

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": " -> ".join(str(loc) for loc in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        logger.warning(f"Validation error on {request.method} {request.url.path}: {len(errors)} field errors")
        return JSONResponse(
            status_code=422,
            content={"error": "Validation Error", "details": errors}
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception in {request.method} {request.url}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal Server Error",
                "message": "An unexpected error occurred while processing your request",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )

    return app


app = create_app()
