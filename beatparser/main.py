"""FastAPI application - serves the parse API."""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from beatparser.analysis.engine import VERSION
from beatparser.api.schemas import HealthResponse
from beatparser.api.upload import router as upload_router
from beatparser.api.websocket import router as ws_router

app = FastAPI(title="Beatparser", version=VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(upload_router, prefix="/api")
app.include_router(ws_router, prefix="/api")


@app.get("/api/health", response_model=HealthResponse)
async def health():
    return HealthResponse(status="ok", version=VERSION)


def run():
    import uvicorn
    from beatparser.config import settings
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(name)s %(levelname)s: %(message)s",
    )
    uvicorn.run(
        "beatparser.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
    )
