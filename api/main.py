from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes.tools import router as tools_router
from api.services.config import get_settings
from api.services.logger import configure_logging

settings = get_settings()
configure_logging(settings.log_level)

app = FastAPI(title="PSA Dashboard Builder API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url, "http://127.0.0.1:5173", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(tools_router)


@app.get("/api/health")
async def health() -> dict[str, str]:
    return {
        "status": "ok",
        "halo_configured": "true" if settings.halo_configured else "false",
    }
