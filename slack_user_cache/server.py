"""
HTTP server for the Slack user cache.

FastAPI application that answers user lookups from the in-memory cache and
runs the background refresh loop for the lifetime of the process.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .lookup import LookupService
from .models import LookupResult, LookupStatus
from .refresh import RefreshCoordinator, RosterSource
from .slack_client import SlackDirectoryClient
from .store import UserStore

logger = logging.getLogger(__name__)


# =====================================================================
# Service State
# =====================================================================

class UserCacheService:
    """
    The process-wide cache: one store shared by the refresh coordinator and
    the lookup service. Built once at startup and held on app.state.
    """

    def __init__(self, settings: Settings, upstream: Optional[RosterSource] = None):
        self.settings = settings
        self.store = UserStore()
        self.upstream = upstream or SlackDirectoryClient.from_settings(settings)
        self.coordinator = RefreshCoordinator(
            self.store,
            self.upstream,
            refresh_interval=settings.refresh_interval_seconds,
            refresh_timeout=settings.effective_refresh_timeout,
            backoff_base=settings.backoff_base_seconds,
            backoff_max=settings.backoff_max_seconds
        )
        self.lookup = LookupService(self.store, self.coordinator)

    async def close(self):
        await self.coordinator.stop()
        aclose = getattr(self.upstream, "aclose", None)
        if aclose is not None:
            await aclose()


def get_cache_service(request: Request) -> UserCacheService:
    """FastAPI dependency returning the shared cache service."""
    return request.app.state.cache_service


# =====================================================================
# Responses
# =====================================================================

def _reply(code: int, body: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=code, content=jsonable_encoder({"code": code, **body}))


def _lookup_response(result: LookupResult) -> JSONResponse:
    """Translate a typed lookup result into the response envelope."""
    if result.status is LookupStatus.FOUND:
        return _reply(200, {"success": True, "result": result.result, "generation": result.generation})

    if result.status is LookupStatus.NOT_FOUND:
        return _reply(404, {"success": True, "message": "not found", "generation": result.generation})

    return _reply(503, {"success": False, "message": "cache not yet populated"})


# =====================================================================
# API Endpoints
# =====================================================================

router = APIRouter()


@router.get("/slack/users")
async def get_all_users(service: UserCacheService = Depends(get_cache_service)):
    return _lookup_response(service.lookup.list_users())


@router.get("/slack/user/id/{user_id}")
async def get_user_by_id(user_id: str, service: UserCacheService = Depends(get_cache_service)):
    return _lookup_response(service.lookup.get_by_id(user_id))


@router.get("/slack/user/email/{email}")
async def get_user_by_email(email: str, service: UserCacheService = Depends(get_cache_service)):
    return _lookup_response(service.lookup.get_by_email(email))


@router.get("/slack/user_groups")
async def get_all_user_groups(service: UserCacheService = Depends(get_cache_service)):
    return _lookup_response(service.lookup.list_user_groups())


@router.get("/slack/user_group/id/{group_id}")
async def get_user_group(group_id: str, service: UserCacheService = Depends(get_cache_service)):
    return _lookup_response(service.lookup.get_user_group(group_id))


@router.get("/healthz")
async def health_check():
    """Liveness: the process is up, whether or not the cache is populated."""
    return _reply(200, {"success": True, "result": "OK"})


@router.get("/readyz")
async def readiness_check(service: UserCacheService = Depends(get_cache_service)):
    """Readiness: 503 until the first refresh has succeeded."""
    status = service.lookup.status()
    if not status.has_data:
        return _reply(503, {"success": False, "message": "cache not yet populated", "result": status})
    return _reply(200, {"success": True, "result": status})


@router.get("/status")
async def cache_status(service: UserCacheService = Depends(get_cache_service)):
    return _reply(200, {"success": True, "result": service.lookup.status()})


@router.post("/admin/refresh")
async def force_refresh(wait: bool = False, service: UserCacheService = Depends(get_cache_service)):
    """
    Force a refresh.

    By default the background loop is signalled and the call returns at once.
    With wait=true the refresh runs inline and the resulting status is returned.
    """
    coordinator = service.coordinator

    if not wait:
        if coordinator.request_refresh("forced"):
            return _reply(202, {"success": True, "result": {"status": "scheduled"}})
        return _reply(202, {"success": True, "result": {"status": "already_running"}})

    if not await coordinator.trigger_refresh("forced"):
        return _reply(202, {"success": True, "result": {"status": "already_running"}})

    return _reply(200, {
        "success": True,
        "result": {"status": "completed", "cache": service.lookup.status()}
    })


# =====================================================================
# FastAPI Application
# =====================================================================

def create_app(
    settings: Optional[Settings] = None,
    upstream: Optional[RosterSource] = None,
    run_refresh_loop: bool = True
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Configuration, defaults to the environment
        upstream: Roster source, defaults to a SlackDirectoryClient
        run_refresh_loop: Start the background refresh loop on startup
    """
    settings = settings or get_settings()
    service = UserCacheService(settings, upstream)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Slack user cache...")
        if run_refresh_loop:
            service.coordinator.start()
        yield
        logger.info("Shutting down Slack user cache...")
        await service.close()

    app = FastAPI(
        title="Slack User Cache",
        description="In-memory caching proxy for Slack user lookups",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.cache_service = service
    app.include_router(router)
    return app


def main():
    """Console entry point: configure logging and serve on LISTEN_ADDRESS."""
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    if not settings.slack_bot_token:
        logger.error("SLACK_BOT_TOKEN is not set")
        raise SystemExit(2)

    host, port = settings.listen_host_port
    logger.info(f"Listening on {host}:{port}")
    uvicorn.run(create_app(settings), host=host, port=port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
