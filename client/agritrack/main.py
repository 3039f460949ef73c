"""Agri-Track web shell: hosts the role guard, driver actions and live feeds."""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from agritrack.core.config import get_settings
from agritrack.core.errors import AgriTrackError
from agritrack.core.logging import configure_logging, logger
from agritrack.routers import auth, depot, driver, farmer, pages, ws
from agritrack.services.driver_devices import driver_devices
from agritrack.services.session_guard import evaluate, is_guarded


ERROR_STATUS = {
    "validation": 422,
    "invalid_code": 400,
    "unauthenticated": 401,
    "too_far": 409,
    "remote": 502,
    "location_unavailable": 422,
    "trip_state": 409,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info(
        "Agri-Track client starting",
        version="0.1.0",
        api_base_url=settings.normalized_base_url(),
        local_api=settings.is_local_api(),
    )
    yield
    # Shutdown
    await driver_devices.aclose()
    logger.info("Agri-Track client shutting down")


app = FastAPI(
    title="Agri-Track Client",
    description="Control layer for Agri-Track freight tracking: role routing, trips, incidents and fleet polling",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^http://(localhost|127\.0\.0\.1)(:\d+)?$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def session_guard(request: Request, call_next):
    """Admit or redirect every navigation to a view."""
    path = request.url.path
    if is_guarded(path):
        decision = evaluate(path, request.cookies.get(get_settings().token_cookie))
        if not decision.allowed:
            logger.info("Navigation redirected", path=path, target=decision.target)
            return RedirectResponse(decision.target, status_code=307)
    return await call_next(request)


@app.exception_handler(AgriTrackError)
async def agritrack_error_handler(request: Request, exc: AgriTrackError):
    return JSONResponse(status_code=ERROR_STATUS.get(exc.kind, 400), content=exc.to_dict())


# Include routers
app.include_router(pages.router)
app.include_router(auth.router)
app.include_router(driver.router)
app.include_router(farmer.router)
app.include_router(depot.router)
app.include_router(ws.router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
