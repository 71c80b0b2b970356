"""
Issue draft schema.

Drafts are exchanged as camelCase JSON (``issueDraftVersion``,
``canonicalId``, ``dependsOn``...). Python code may use the snake_case
field names. Unknown keys are rejected everywhere.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel

from canonflow.utils.hashing import content_hash

ISSUE_DRAFT_VERSION = "1.0"

#: Fields a patch may touch. Everything else is identity and never patched.
PATCHABLE_FIELDS: frozenset[str] = frozenset(
    {"title", "body", "labels", "depends_on", "priority", "acceptance_criteria", "kpi", "guards", "verify"}
)
LIST_FIELDS: frozenset[str] = frozenset({"labels", "depends_on", "acceptance_criteria"})
#: List fields whose order carries no meaning; deduplicated and sorted.
SET_LIKE_FIELDS: frozenset[str] = frozenset({"labels", "depends_on"})

CANONICAL_ID_PATTERN = r"^(CID:)?([A-Z][0-9]+(\.[0-9]+)*|TBD)$"

CanonicalId = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=50, pattern=CANONICAL_ID_PATTERN)]
Label = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)]
Criterion = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=1000)]
Command = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=500)]


class _DraftModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid", frozen=True)


class Kpi(_DraftModel):
    dcu: Literal[0.5, 1, 2] | None = None
    intent: Annotated[str, StringConstraints(strip_whitespace=True, max_length=200)] | None = None


class Guards(_DraftModel):
    env: Literal["staging", "development"]
    prod_blocked: Literal[True] = True


class Verify(_DraftModel):
    commands: list[Command] = Field(min_length=1, max_length=10)
    expected: list[Command] = Field(min_length=1, max_length=10)


class IssueDraft(_DraftModel):
    """Structured draft of a tracker issue."""

    issue_draft_version: Literal["1.0"] = ISSUE_DRAFT_VERSION
    title: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)]
    body: Annotated[str, StringConstraints(strip_whitespace=True, min_length=10, max_length=10000)]
    type: Literal["epic", "issue"] = "issue"
    canonical_id: CanonicalId
    labels: list[Label] = Field(default_factory=list, max_length=50)
    depends_on: list[CanonicalId] = Field(default_factory=list, max_length=20)
    priority: Literal["P0", "P1", "P2"] = "P1"
    kpi: Kpi | None = None
    acceptance_criteria: list[Criterion] = Field(min_length=1, max_length=20)
    verify: Verify
    guards: Guards

    def to_document(self) -> dict[str, Any]:
        """camelCase JSON document, the form that is hashed and exchanged."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @property
    def content_hash(self) -> str:
        return content_hash(self.to_document())

    def normalized(self) -> IssueDraft:
        """Copy with set-like lists deduplicated and sorted."""
        data = self.model_dump()
        for name in SET_LIKE_FIELDS:
            data[name] = sorted(set(data[name]))
        return IssueDraft.model_validate(data)


def field_name(key: str) -> str | None:
    """Map a patch key (snake_case or camelCase) to a patchable field name."""
    if key in PATCHABLE_FIELDS:
        return key
    for name in PATCHABLE_FIELDS:
        if to_camel(name) == key:
            return name
    return None
