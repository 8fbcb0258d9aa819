"""
Pydantic schemas for document parsing.
Extracted PDF text and the labelled content chunks cut from it.
"""

from pydantic import BaseModel, Field


class ExtractedText(BaseModel):
    """Plain text of a PDF, pages separated by form feeds (\\f)."""
    text: str = Field(..., description="Full extracted text")
    page_count: int = Field(1, ge=1, description="Number of pages in the source PDF")


class Chunk(BaseModel):
    """
    One contiguous, labelled slice of a document.

    Produced once per document when a session starts and never
    modified afterwards; the session record embeds its own copy.
    """
    id: str = Field(..., description="Stable id within the session, e.g. chunk_3")
    heading: str = Field(..., description="Detected heading or a positional label")
    content: str = Field(..., description="Body text, heading line included")
    page_range: str = Field(..., description="Human label: '4' or '4-6'")
    start_page: int = Field(1, ge=1)
    end_page: int = Field(1, ge=1)

    class Config:
        json_schema_extra = {
            "example": {
                "id": "chunk_2",
                "heading": "2. Insuffisance cardiaque",
                "content": "2. Insuffisance cardiaque\nL'insuffisance cardiaque est ...",
                "page_range": "3-4",
                "start_page": 3,
                "end_page": 4,
            }
        }
