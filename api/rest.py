import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import Config, config as default_config
from core.dispatcher import EmergencyDispatcher
from core.errors import DispatchServiceError
from core.gateway import NotificationGateway, build_gateway
from core.locator import AmbulanceLocator
from core.messages import EmergencyMessageComposer
from core.registry import AmbulanceRegistry
from models import (
    AmbulanceRecord, AmbulanceRegistration, DispatchResult,
    EmergencyCallPayload, RegistryStats
)

logger = logging.getLogger(__name__)


class DispatchServiceAPI:
    """Wires the registry, locator, gateway and dispatcher together."""

    def __init__(
        self,
        registry: AmbulanceRegistry,
        gateway: NotificationGateway,
        composer: EmergencyMessageComposer,
        settings: Config = None,
    ):
        self.settings = settings or default_config
        self.registry = registry
        self.locator = AmbulanceLocator(registry)
        self.gateway = gateway
        self.composer = composer
        self.dispatcher = EmergencyDispatcher.from_config(self.settings, self.locator, gateway, composer)

    @classmethod
    def from_config(cls, settings: Config) -> "DispatchServiceAPI":
        return cls(
            registry=AmbulanceRegistry.from_config(settings),
            gateway=build_gateway(settings),
            composer=EmergencyMessageComposer.from_config(settings),
            settings=settings,
        )


def get_api(request: Request) -> DispatchServiceAPI:
    return request.app.state.dispatch_api


router = APIRouter(prefix="/emergency")


@router.post("/ambulances/register", status_code=201, response_model=AmbulanceRecord)
def register_ambulance(registration: AmbulanceRegistration, request: Request):
    """Register an ambulance, or refresh the location of an already registered one."""
    return get_api(request).registry.register(registration)


@router.get("/ambulances")
def list_ambulances(request: Request):
    """Get all registered ambulances."""
    ambulances = get_api(request).registry.list_all()
    return {
        "success": True,
        "count": len(ambulances),
        "data": ambulances
    }


@router.get("/ambulances/stats", response_model=RegistryStats)
def get_registry_stats(request: Request):
    return get_api(request).registry.get_stats()


@router.post("/ambulances/index/rebuild")
def rebuild_index(request: Request):
    """Drop and recreate the spatial index."""
    cells = get_api(request).registry.rebuild_index()
    return {"success": True, "message": "Index rebuilt", "indexedCells": cells}


@router.get("/ambulances/{ambulance_id}", response_model=AmbulanceRecord)
def get_ambulance(ambulance_id: str, request: Request):
    return get_api(request).registry.get(ambulance_id)


@router.post("/call", response_model=DispatchResult)
async def emergency_call(payload: EmergencyCallPayload, request: Request):
    """Notify every ambulance near the caller.

    Returns 200 with an empty candidate list when nothing is in range. Calls
    are only placed when a callback phone is supplied.
    """
    return await get_api(request).dispatcher.dispatch(payload.to_request())


@router.get("/dispatches", response_model=List[DispatchResult])
async def list_dispatches(
    request: Request,
    limit: int = Query(20, description="Maximum results", ge=1, le=200)
):
    return get_api(request).dispatcher.dispatch_log.recent(limit)


@router.get("/dispatches/{dispatch_id}", response_model=DispatchResult)
async def get_dispatch(dispatch_id: str, request: Request):
    return get_api(request).dispatcher.dispatch_log.get(dispatch_id)


async def handle_service_error(request: Request, exc: DispatchServiceError):
    content: Dict[str, Any] = {"success": False, "message": exc.message}
    fields = getattr(exc, "fields", None)
    if fields:
        content["fields"] = fields
    return JSONResponse(status_code=exc.status_code, content=content)


async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    fields = {}
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part != "body"]
        fields[".".join(location) or "body"] = error.get("msg", "invalid value")
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder({"success": False, "message": "Malformed request", "fields": fields})
    )


def create_app(dispatch_api: Optional[DispatchServiceAPI] = None, settings: Config = None) -> FastAPI:
    """Build the FastAPI application.

    When no service object is given, one is built from configuration at startup.
    """
    settings = settings or default_config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle."""
        if getattr(app.state, "dispatch_api", None) is None:
            app.state.dispatch_api = DispatchServiceAPI.from_config(settings)

        stats = app.state.dispatch_api.registry.get_stats()
        logger.info("Loaded registry with %d ambulances", stats.total_ambulances)

        yield

        try:
            await run_in_threadpool(app.state.dispatch_api.registry.save)
        except DispatchServiceError as e:
            logger.error("Error saving registry on shutdown: %s", e)
        await app.state.dispatch_api.gateway.close()
        logger.info("Ambulance dispatch API stopped")

    app = FastAPI(
        title="Ambulance Dispatch API",
        description="Proximity-based emergency ambulance lookup and notification dispatch",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.dispatch_api = dispatch_api

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(DispatchServiceError, handle_service_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        api = get_api(request)
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "registry_stats": api.registry.get_stats(),
            "gateway": api.gateway.name,
            "live_notifications": api.gateway.is_live(),
            "ai_messages": api.composer.is_available(),
            "recent_dispatches": len(api.dispatcher.dispatch_log)
        }

    app.include_router(router)
    return app


app = create_app()
