"""
Files Router — /files
Lists the PDF library in DATA_DIR.
"""

import os
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel

from storage import DATA_DIR

router = APIRouter(prefix="/files", tags=["files"])

MAX_LISTED_FILES = 1000


class PdfFile(BaseModel):
    name: str
    size: int
    modified_at: datetime


class FileListResponse(BaseModel):
    files: List[PdfFile]


def list_library_pdfs(data_dir: Optional[str] = None, query: Optional[str] = None) -> List[PdfFile]:
    """PDFs in data_dir, newest first, optionally filtered by a case-insensitive substring."""
    data_dir = data_dir or DATA_DIR
    if not os.path.isdir(data_dir):
        return []
    needle = (query or "").strip().lower()
    files = []
    with os.scandir(data_dir) as entries:
        for entry in entries:
            if not entry.is_file() or not entry.name.lower().endswith(".pdf"):
                continue
            if needle and needle not in entry.name.lower():
                continue
            stat = entry.stat()
            files.append(PdfFile(
                name=entry.name,
                size=stat.st_size,
                modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            ))
    files.sort(key=lambda f: f.modified_at, reverse=True)
    return files[:MAX_LISTED_FILES]


def resolve_library_pdf(filename: str, data_dir: Optional[str] = None) -> str:
    """
    Path of a library PDF chosen by name.

    Raises:
        HTTPException: 400 for names with path parts or a non-PDF extension,
            404 if the file does not exist
    """
    data_dir = data_dir or DATA_DIR
    name = (filename or "").strip()
    if not name or os.path.basename(name) != name or name.startswith("."):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid filename")
    if not name.lower().endswith(".pdf"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only PDF files are supported")
    path = os.path.join(data_dir, name)
    if not os.path.isfile(path):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"File {name} not found")
    return path


@router.get("", response_model=FileListResponse)
async def list_files(q: Optional[str] = Query(None, description="Substring filter")):
    return FileListResponse(files=list_library_pdfs(query=q))
