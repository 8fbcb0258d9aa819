"""
Generation Router — /generate

Incremental quiz generation: start returns the first question quickly, the
client then polls get/continue until the session is completed.
Endpoints:
  POST /generate/start     — upload (or pick) a PDF and start a session
  POST /generate/continue  — advance a session (409 while another pass runs)
  GET  /generate/get       — question #index, 404 + counters if not ready yet
  GET  /generate/status    — session summary from the authoritative record
"""

import asyncio
import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from fastapi.responses import JSONResponse

from auth.security import get_optional_user_id
from generation.errors import (
    DocumentUnreadableError,
    EmptyDocumentError,
    GenerationBusyError,
    SessionNotFoundError,
    StorageError,
)
from generation.orchestrator import GenerationOrchestrator, get_orchestrator
from generation.schemas import (
    ContinueRequest,
    ContinueResponse,
    GetResponse,
    StartResponse,
    StatusResponse,
)
from routers.files import resolve_library_pdf

router = APIRouter(prefix="/generate", tags=["generate"])

log = logging.getLogger("generation.pipeline")

MAX_UPLOAD_SIZE = int(os.getenv("MAX_UPLOAD_SIZE", 52428800))  # 50MB default
UPLOAD_READ_CHUNK = 1024 * 1024  # 1MB chunks


async def read_pdf_upload(upload_file: UploadFile) -> bytes:
    """
    Read an uploaded PDF into memory, enforcing MAX_UPLOAD_SIZE.

    Raises:
        HTTPException: 400 for a non-PDF filename, 413 when too large
    """
    name = (upload_file.filename or "").strip()
    if not name.lower().endswith(".pdf"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only PDF files are supported",
        )

    parts = []
    size = 0
    while True:
        chunk = await upload_file.read(UPLOAD_READ_CHUNK)
        if not chunk:
            break
        size += len(chunk)
        if size > MAX_UPLOAD_SIZE:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"File too large: {size} bytes. Max: {MAX_UPLOAD_SIZE} bytes ({MAX_UPLOAD_SIZE // 1048576}MB)",
            )
        parts.append(chunk)
    return b"".join(parts)


def read_library_pdf(path: str) -> bytes:
    """Blocking read of a library PDF; callers run it in a worker thread."""
    with open(path, "rb") as f:
        return f.read()


def _session_not_found(e: SessionNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _storage_unavailable(e: StorageError) -> HTTPException:
    log.error(f"[STORAGE] {e}")
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"Storage unavailable: {e}")


# ─── Start ─────────────────────────────────────────────────────────────────────

@router.post("/start", response_model=StartResponse)
async def start_generation(
    pdf: Optional[UploadFile] = File(None, description="PDF to turn into a quiz"),
    filename: Optional[str] = Form(None, description="Name of a PDF already in DATA_DIR"),
    num_questions: int = Form(8, ge=1, le=100),
    tone: str = Form("concise", description="concise | detailed"),
    user_id: Optional[str] = Depends(get_optional_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """
    **Start a quiz session from a PDF.**

    Send either a `pdf` upload or the `filename` of a PDF in the library.
    The first questions are generated before the response; the rest are
    generated in the background and by later continue/get calls.
    """
    if pdf is not None and pdf.filename:
        pdf_bytes = await read_pdf_upload(pdf)
        name = os.path.basename(pdf.filename.strip())
    elif filename:
        path = resolve_library_pdf(filename)
        pdf_bytes = await asyncio.to_thread(read_library_pdf, path)
        name = os.path.basename(path)
    else:
        raise HTTPException(status_code=400, detail="Provide a 'pdf' upload or a 'filename'")

    log.info(f"[START] '{name}': {num_questions} questions, tone={tone}, {len(pdf_bytes)} bytes")
    try:
        return await orchestrator.start(pdf_bytes, name, num_questions, tone, user_id)
    except DocumentUnreadableError as e:
        raise HTTPException(status_code=400, detail=f"Could not read PDF: {e}")
    except EmptyDocumentError as e:
        raise HTTPException(status_code=422, detail=f"Document has no usable content: {e}")
    except StorageError as e:
        raise _storage_unavailable(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        log.error(f"[START] Unexpected error: {e}")
        raise HTTPException(status_code=500, detail=f"Generation error: {e}")


# ─── Continue ──────────────────────────────────────────────────────────────────

@router.post("/continue", response_model=ContinueResponse)
async def continue_generation(
    request: ContinueRequest,
    user_id: Optional[str] = Depends(get_optional_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """
    **Advance a session by a few questions.**

    Returns 409 `{"status": "busy"}` while another pass is running for the
    same session; the client simply retries later.
    """
    try:
        return await orchestrator.continue_session(request.session_id, user_id)
    except GenerationBusyError as e:
        return JSONResponse(status_code=409, content={"status": "busy", "detail": str(e)})
    except SessionNotFoundError as e:
        raise _session_not_found(e)
    except StorageError as e:
        raise _storage_unavailable(e)
    except Exception as e:
        log.error(f"[CONTINUE] Unexpected error: {e}")
        raise HTTPException(status_code=500, detail=f"Generation error: {e}")


# ─── Get / status ──────────────────────────────────────────────────────────────

@router.get("/get", response_model=GetResponse)
async def get_question(
    id: str = Query(..., description="Session id"),
    index: int = Query(0, ge=0, description="0-based question index"),
    user_id: Optional[str] = Depends(get_optional_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Question #index, or 404 with the progress counters if it is not generated yet."""
    try:
        result = await orchestrator.get_question(id, index, user_id)
    except SessionNotFoundError as e:
        raise _session_not_found(e)
    except StorageError as e:
        raise _storage_unavailable(e)

    if result.question is None:
        return JSONResponse(status_code=404, content=result.model_dump(mode="json"))
    return result


@router.get("/status", response_model=StatusResponse)
async def get_status(
    id: str = Query(..., description="Session id"),
    user_id: Optional[str] = Depends(get_optional_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.status(id, user_id)
    except SessionNotFoundError as e:
        raise _session_not_found(e)
    except StorageError as e:
        raise _storage_unavailable(e)
