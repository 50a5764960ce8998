"""
DTOs for the PageScraper contract: scrape configuration in, rows out.
"""

from pydantic import BaseModel, ConfigDict, Field


class ColumnDefinition(BaseModel):
    """One output column, selected relative to each row element."""

    name: str = Field(..., min_length=1, description="Column header")
    selector: str = Field(..., min_length=1, description="XPath relative to the row")


class ScrapeConfig(BaseModel):
    """Selector configuration applied to every page of a batch."""

    main_selector: str = Field(
        ..., min_length=1, description="XPath selecting one element per row"
    )
    columns: list[ColumnDefinition] = Field(..., min_length=1)

    model_config = ConfigDict(extra="allow")


class ScrapedRowMetadata(BaseModel):
    original_index: int
    is_empty: bool = False


class ScrapedRow(BaseModel):
    data: dict[str, str]
    metadata: ScrapedRowMetadata | None = None


class ScrapeResult(BaseModel):
    """What a single successful page scrape produces."""

    data: list[ScrapedRow] = Field(default_factory=list)
    column_order: list[str] = Field(default_factory=list)
