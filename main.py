"""
Oppie API — Main Application
FastAPI application that turns PDF study documents into true/false quiz
sessions, generated incrementally so the first question arrives quickly.
Also serves flashcards (SM-2), per-domain score stats and bearer-token auth.
"""

from dotenv import load_dotenv
load_dotenv()

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from generation.orchestrator import get_orchestrator
from routers import auth, domains, files, flashcards, generation, sessions
from storage import DATA_DIR, STORAGE_BACKEND
from storage.redis_client import close_redis

logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(levelname)s  %(message)s")
log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: ensure the data directory exists. Shutdown: drain background passes."""
    os.makedirs(DATA_DIR, exist_ok=True)
    log.info(f"✓ Storage backend: {STORAGE_BACKEND} (data dir {os.path.abspath(DATA_DIR)})")
    yield
    await get_orchestrator().wait_idle()
    await close_redis()


app = FastAPI(
    title="Oppie API",
    description="Incremental PDF-to-quiz generation, flashcards and domain progress tracking",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ─── Routers ───────────────────────────────────────────────────────────────────

# Auth
app.include_router(auth.router)               # /auth/*

# Quiz generation
app.include_router(generation.router)         # /generate/*
app.include_router(sessions.router)           # /sessions
app.include_router(files.router)              # /files

# Study tools
app.include_router(flashcards.router)         # /flashcards/*
app.include_router(domains.router)            # /domains/*


@app.get("/")
async def root():
    return {
        "name": "Oppie API",
        "version": "1.0.0",
        "docs": "/docs",
        "storage_backend": STORAGE_BACKEND,
    }


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=False)
