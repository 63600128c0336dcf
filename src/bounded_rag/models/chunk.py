# bounded_rag/models/chunk.py
"""Retrieval units and the locator metadata attached to citations."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ContentChunk(BaseModel):
    """A retrieved slice of document text. Immutable once retrieved."""

    model_config = ConfigDict(frozen=True)

    id: str
    content: str
    token_count: int = Field(..., ge=0, description="Estimated token cost of content")
    section: str = Field(default="Unknown section")
    parent_section: str | None = None
    paragraph_index: int | None = None
    sentence_group_index: int | None = None
    document_order_index: int = Field(default=0, description="Position in the source document")

    # Locator fields used to scroll back to the source
    css_selector: str | None = None
    element_id: str | None = None
    x_path: str | None = None
    start_char: int | None = None
    end_char: int | None = None

    @property
    def hierarchy(self) -> str:
        """``Parent > Section`` when a parent exists, else the section."""
        if self.parent_section:
            return f"{self.parent_section} > {self.section}"
        return self.section


class SourceInfo(BaseModel):
    """Locator metadata for one cited section."""

    model_config = ConfigDict(frozen=True)

    text: str
    css_selector: str | None = None
    element_id: str | None = None
    x_path: str | None = None
    section_heading: str | None = None
    start_char: int | None = None
    end_char: int | None = None
