"""
Pydantic models shared by the builder, the database handle and the
query evaluator. They describe engine semantics, not wire formats.
"""

import hashlib
import re
import time
from typing import Any, Literal, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

FieldType = Literal["string", "number", "date", "boolean"]

# Columns owned by the engine; survey fields may not reuse these names
RESERVED_COLUMNS = {"id", "geometry"}

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SkyCell(NamedTuple):
    """Address of one cell in the nested HEALPix hierarchy."""

    order: int
    pix: int

    @property
    def is_allsky(self) -> bool:
        return self.order == -1


ALLSKY = SkyCell(-1, 0)


class FieldSpec(BaseModel):
    """One queryable field of the survey schema.

    Keys other than the ones declared here (widget, formatFunc, ...) are
    presentation rules evaluated by the client; they are kept verbatim.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    name: Optional[str] = None
    type: FieldType = "string"
    source: Optional[str] = None  # raw property name, defaults to id
    computed: Optional[str] = None  # SQL expression for derived fields

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        if not _IDENTIFIER_RE.match(value):
            raise ValueError(f"Invalid field id: {value!r}")
        if value.lower() in RESERVED_COLUMNS:
            raise ValueError(f"Field id {value!r} is reserved")
        return value

    @property
    def source_key(self) -> str:
        return self.source or self.id


class SurveyConfig(BaseModel):
    """Field schema plus presentation rules, loaded once at ingestion."""

    model_config = ConfigDict(extra="allow")

    fields: list[FieldSpec]

    @model_validator(mode="after")
    def _unique_ids(self):
        seen = set()
        for spec in self.fields:
            key = spec.id.lower()
            if key in seen:
                raise ValueError(f"Duplicate field id: {spec.id!r}")
            seen.add(key)
        return self

    def field(self, field_id: str) -> Optional[FieldSpec]:
        for spec in self.fields:
            if spec.id == field_id:
                return spec
        return None

    def to_public_dict(self) -> dict:
        """Plain-data form served verbatim to the presentation layer."""
        return self.model_dump(exclude_none=True)


class ServerInfo(BaseModel):
    """Identity metadata of a build: which data and which code produced it."""

    model_config = ConfigDict(extra="allow")

    version: str = "dev"
    data_revision: str = ""
    code_revision: str = ""
    data_local_modifications: bool = False

    def content_hash(self, now_ms: Optional[int] = None) -> str:
        """Hash identifying the database built from this data/code pair.

        A checkout with local modifications is salted with the current time
        so it never matches a previous build.
        """
        key = self.data_revision + self.code_revision
        if self.data_local_modifications:
            if now_ms is None:
                now_ms = int(time.time() * 1000)
            key += f"_{now_ms}"
        return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]


class DatabaseInfo(BaseModel):
    """Metadata recorded in a built database."""

    content_hash: str
    engine_version: str
    index_order: int
    feature_count: int = 0
    skipped_count: int = 0
    extra_info: dict = Field(default_factory=dict)


class Constraint(BaseModel):
    """Legacy per-field constraint as sent by the survey client."""

    field: str
    operation: Literal["STRING_EQUAL", "EQUAL", "NUMBER_RANGE", "DATE_RANGE", "IN"]
    expression: Any = None
    negate: bool = False


class Aggregation(BaseModel):
    """One requested statistic over the matching features."""

    out: str
    operation: Literal[
        "COUNT",
        "VALUES_AND_COUNT",
        "MIN_MAX",
        "NUMBER_HISTOGRAM",
        "DATE_HISTOGRAM",
        "SUM",
        "AVG",
        "IDS",
    ]
    field: Optional[str] = None
    bins: int = Field(10, ge=1, le=1000)
    step: Literal["day", "week", "month", "year"] = "month"


class QueryRequest(BaseModel):
    """Raw query request before parsing into a predicate tree."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    # Set by the registry: the database the query was registered against
    database_hash: Optional[str] = Field(None, alias="databaseHash")
    filter: Optional[dict] = None
    constraints: list[Constraint] = Field(default_factory=list)
    aggregations: list[Aggregation] = Field(default_factory=list)
    properties: list[str] = Field(default_factory=list)
