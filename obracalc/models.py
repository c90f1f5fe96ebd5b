"""ObraCalc Pydantic models for type-safe data validation.

All money values are ``Decimal`` and follow the EUR defaults of Spanish
price books. Confidence scores are on a 0-100 scale; similarity scores
on a 0-1 scale.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from obracalc.canonical.normalize import build_search_text, parse_locale_number

CENT = Decimal("0.01")


def quantize_money(value: Decimal) -> Decimal:
    """Round a money amount to cents (half up)."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ItemKind(str, Enum):
    """Catalog record type."""

    WORK = "work"  # Composite work item (labour + materials)
    MATERIAL = "material"  # Bare material/resource


class MatchType(str, Enum):
    """How a resolved line item was priced."""

    LABOR = "LABOR"
    MATERIAL = "MATERIAL"
    ESTIMATE = "ESTIMATE"


class JobStatus(str, Enum):
    """Ingestion job lifecycle states. COMPLETED and FAILED are terminal."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class LogLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class TokenUsage(BaseModel):
    """Cumulative token usage of extraction and embedding calls."""

    extraction_tokens: int = 0
    embedding_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.extraction_tokens + self.embedding_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            extraction_tokens=self.extraction_tokens + other.extraction_tokens,
            embedding_tokens=self.embedding_tokens + other.embedding_tokens,
        )


class BreakdownComponent(BaseModel):
    """One sub-resource contributing to a composite item's price."""

    code: str | None = None
    description: str
    kind: Literal["labor", "material", "machinery", "other"] = "other"
    unit: str | None = None
    quantity: Decimal = Decimal("1")  # yield per unit of the parent item
    unit_price: Decimal = Decimal("0")
    waste_factor: Decimal = Decimal("0")  # 0.10 == 10 %
    subtotal: Decimal | None = None
    is_substituted: bool = False

    @field_validator("quantity", "unit_price", "waste_factor", mode="before")
    @classmethod
    def parse_numbers(cls, v: Any) -> Any:
        parsed = parse_locale_number(v)
        return parsed if parsed is not None else Decimal("0")

    @field_validator("subtotal", mode="before")
    @classmethod
    def parse_subtotal(cls, v: Any) -> Any:
        return parse_locale_number(v)

    @model_validator(mode="after")
    def compute_subtotal(self) -> BreakdownComponent:
        if self.subtotal is None:
            self.subtotal = quantize_money(
                self.quantity * self.unit_price * (1 + self.waste_factor)
            )
        return self

    def to_json_dict(self) -> dict[str, Any]:
        """JSON-storable dict with numbers as floats.

        Decimal strings such as "1.250" would be read back as thousands by
        the locale parser, so numbers are never stored as strings.
        """
        data = self.model_dump(exclude_none=True)
        return {k: float(v) if isinstance(v, Decimal) else v for k, v in data.items()}


class ChapterContext(BaseModel):
    """Chapter/section headings carried forward from page to page."""

    model_config = ConfigDict(frozen=True)

    chapter: str | None = None
    section: str | None = None

    def advance(self, chapter: str | None = None, section: str | None = None) -> ChapterContext:
        """Return the context for the next page.

        A new chapter heading resets the section unless one is reported with
        it; a section heading alone keeps the current chapter. No headings
        means the context persists unchanged.
        """
        chapter = chapter.strip() if chapter and chapter.strip() else None
        section = section.strip() if section and section.strip() else None

        if chapter and chapter != self.chapter:
            return ChapterContext(chapter=chapter, section=section)
        if section:
            return ChapterContext(chapter=self.chapter, section=section)
        return self


class CatalogRecord(BaseModel):
    """A priced, searchable unit of work or material.

    Identity is ``(year, code)``; ``sku`` is an optional alternative key.
    """

    code: str
    sku: str | None = None
    description: str
    unit: str = "ud"
    kind: ItemKind = ItemKind.WORK

    # Hierarchical context
    chapter: str | None = None
    section: str | None = None

    # Pricing
    price_total: Decimal
    price_labor: Decimal | None = None
    price_material: Decimal | None = None
    breakdown: list[BreakdownComponent] = Field(default_factory=list)

    # Provenance
    year: int
    source_page: int | None = None
    source_document: str | None = None
    extraction_tokens: int | None = None

    embedding: list[float] | None = None

    @field_validator("price_total", mode="before")
    @classmethod
    def parse_price_total(cls, v: Any) -> Any:
        parsed = parse_locale_number(v)
        return parsed if parsed is not None else v

    @field_validator("price_labor", "price_material", mode="before")
    @classmethod
    def parse_optional_price(cls, v: Any) -> Any:
        return parse_locale_number(v)

    @field_validator("price_total")
    @classmethod
    def validate_price_total(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("price_total must be non-negative")
        return v

    @property
    def identity(self) -> tuple[int, str]:
        return (self.year, self.code)

    @property
    def search_text(self) -> str:
        """Canonical string embedded for vector search."""
        return build_search_text(
            self.description,
            chapter=self.chapter,
            section=self.section,
            code=self.code,
            unit=self.unit,
        )

    def to_row(self) -> dict[str, Any]:
        """Serialize to a storage row.

        Optional fields are only included when set, so an upsert never
        overwrites stored values with NULLs it did not mean to write.
        """
        row: dict[str, Any] = {
            "year": self.year,
            "code": self.code,
            "description": self.description,
            "unit": self.unit,
            "kind": self.kind.value,
            "price_total": self.price_total,
            "search_text": self.search_text,
        }
        optional = {
            "sku": self.sku,
            "chapter": self.chapter,
            "section": self.section,
            "price_labor": self.price_labor,
            "price_material": self.price_material,
            "source_page": self.source_page,
            "source_document": self.source_document,
            "extraction_tokens": self.extraction_tokens,
            "embedding": self.embedding,
        }
        for key, value in optional.items():
            if value is not None:
                row[key] = value
        if self.breakdown:
            row["breakdown"] = [c.to_json_dict() for c in self.breakdown]
        return row


class MatchCandidate(BaseModel):
    """Ephemeral result of one nearest-neighbour query."""

    record: CatalogRecord
    score: float = Field(..., ge=0, le=1)
    query_variant: str = ""

    @property
    def identity(self) -> tuple[int, str]:
        return self.record.identity


class ResolvedLineItem(BaseModel):
    """Priced outcome of resolving one task description."""

    order: int = 0
    code: str | None = None
    description: str
    unit: str
    quantity: Decimal
    unit_price: Decimal
    total_price: Decimal
    match_type: MatchType
    match_confidence: float = Field(..., ge=0, le=100)
    is_estimate: bool = False
    needs_review: bool = False
    reason: str = ""
    original_task: str | None = None
    breakdown: list[BreakdownComponent] = Field(default_factory=list)
    note: str | None = None

    @classmethod
    def priced(cls, quantity: Decimal, unit_price: Decimal, **fields: Any) -> ResolvedLineItem:
        """Build an item with ``total_price`` computed from quantity and the rounded price."""
        unit_price = quantize_money(unit_price)
        return cls(
            quantity=quantity,
            unit_price=unit_price,
            total_price=quantize_money(unit_price * quantity),
            **fields,
        )

    def with_quantity(self, quantity: Decimal) -> ResolvedLineItem:
        """Copy with a new quantity and recomputed total."""
        return self.model_copy(
            update={
                "quantity": quantity,
                "total_price": quantize_money(self.unit_price * quantity),
            }
        )


class LogEntry(BaseModel):
    """Timestamped job log line."""

    timestamp: datetime = Field(default_factory=utcnow)
    message: str
    level: LogLevel = LogLevel.INFO


class IngestionJob(BaseModel):
    """Progress and outcome of one catalog ingestion run."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    source_document: str
    year: int
    status: JobStatus = JobStatus.PENDING
    total_pages: int = 0
    processed_pages: int = 0
    skipped_pages: int = 0
    failed_pages: int = 0
    total_items: int = 0
    usage: TokenUsage = Field(default_factory=TokenUsage)
    logs: list[LogEntry] = Field(default_factory=list)
    current_activity: str | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def progress(self) -> float:
        if self.total_pages == 0:
            return 0.0
        return self.processed_pages / self.total_pages


class Subtask(BaseModel):
    """Atomic, independently priceable unit produced by decomposition."""

    search_query: str
    quantity: Decimal = Decimal("1")
    unit: str = "ud"
    reasoning: str | None = None
    chapter: str | None = None

    @field_validator("quantity", mode="before")
    @classmethod
    def parse_quantity(cls, v: Any) -> Any:
        parsed = parse_locale_number(v)
        return parsed if parsed is not None else Decimal("1")


class ConcreteMaterial(BaseModel):
    """A specific commercial material chosen to replace a generic one."""

    sku: str
    name: str
    price: Decimal
    unit: str
    merchant: str | None = None
    url: str | None = None


class OptimizeExistingItem(BaseModel):
    """Re-price an existing line item with a concrete material."""

    kind: Literal["optimize"] = "optimize"
    item: ResolvedLineItem
    material: ConcreteMaterial


class DecomposeDescription(BaseModel):
    """Decompose a free-text request into priced line items."""

    kind: Literal["decompose"] = "decompose"
    description: str = Field(..., min_length=1)
    project_context: str | None = None


BudgetRequest = Annotated[
    Union[OptimizeExistingItem, DecomposeDescription], Field(discriminator="kind")
]
