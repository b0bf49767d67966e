from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from quicknote_auth.core.config import PROJECT_NAME, ALLOW_ORIGINS, ENVIRONMENT, HOST, PORT, REDIS_URL
from quicknote_auth.core.logging_config import configure_logging
from quicknote_auth.db.database import engine, SessionLocal
from quicknote_auth.db.models import Base
from quicknote_auth.routers import auth_router, device_router, health_router
from quicknote_auth.services.auth_orchestrator import AuthOrchestrator
from quicknote_auth.services.fingerprint import EnvironmentFingerprintSource
from quicknote_auth.storage.stores import SQLKeyValueStore, create_volatile_store

configure_logging()


def build_orchestrator() -> AuthOrchestrator:
    Base.metadata.create_all(bind=engine)
    return AuthOrchestrator(
        durable=SQLKeyValueStore(SessionLocal),
        volatile=create_volatile_store(REDIS_URL),
        fingerprint_source=EnvironmentFingerprintSource(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests install their own orchestrator before startup
    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = build_orchestrator()
    yield


app = FastAPI(title=PROJECT_NAME, description="Device-local TOTP authentication for QuickNote", lifespan=lifespan)

# CORS Middleware - only the local frontend may call the service
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"  # Prevents MIME sniffing attacks
    response.headers["X-Frame-Options"] = "DENY"  # Prevents clickjacking by blocking iframe embedding
    response.headers["Cache-Control"] = "no-store"  # Provisioning secrets must never be cached
    response.headers["Content-Security-Policy"] = "default-src 'self'"
    return response

# Include routers
app.include_router(auth_router.router, prefix="/api/auth", tags=["Authentication"])
app.include_router(device_router.router, prefix="/api/devices", tags=["Devices"])
app.include_router(health_router.router, prefix="/api/health", tags=["Health"])

@app.get("/")
async def root():
    return {"message": f"{PROJECT_NAME} is running."}

if __name__ == "__main__":
    uvicorn_config = {
        "app": "quicknote_auth.main:app",
        "host": HOST,
        "port": PORT,
        "reload": ENVIRONMENT == "development",
    }
    uvicorn.run(**uvicorn_config)
