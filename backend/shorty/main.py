import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from shorty.admin.router import router as admin_router
from shorty.config import settings
from shorty.middleware import CorrelationIDMiddleware
from shorty.organizations.service import bootstrap_global_organization
from shorty.scim.auth import drain_background_tasks
from shorty.scim.errors import ScimError
from shorty.scim.router import router as scim_router
from shorty.scim.router import scim_exception_handler

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await bootstrap_global_organization()
    yield
    await drain_background_tasks()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    docs_url="/api/docs",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

# Middleware
app.add_middleware(CorrelationIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.backend_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(ScimError, scim_exception_handler)

# Routers
app.include_router(scim_router, prefix="/scim/v2", tags=["SCIM"])
app.include_router(admin_router, prefix="/api/admin", tags=["Admin"])


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "version": settings.app_version}
