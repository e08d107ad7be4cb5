from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class MetadataRecord(BaseModel):
    """Link-preview metadata for one page. `is_fallback` marks a record built from the URL alone."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    title: str
    description: str
    image: Optional[str] = None
    site_name: str = Field(alias="siteName")
    favicon: str
    url: str
    is_fallback: bool = Field(alias="isFallback")


class ErrorResponse(BaseModel):
    error: str
