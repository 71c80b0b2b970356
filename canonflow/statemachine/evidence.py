"""Evidence kinds accepted by transition preconditions.

Evidence arrives from external systems as a loosely typed ``tag -> bool``
map. Known tags are parsed into ``EvidenceKind`` members; unknown tags are
kept verbatim (forward compatibility) and logged so that typos in a
webhook payload or a new upstream signal are visible rather than silently
dropped.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

import structlog

log = structlog.get_logger(__name__)


class EvidenceKind(str, Enum):
    """Closed set of evidence tags the canonical lifecycle understands."""

    SPEC_APPROVED = "spec_approved"
    CODE_COMMITTED = "code_committed"
    TESTS_PASS = "tests_pass"
    CI_CHECKS_GREEN = "ci_checks_green"
    REVIEW_APPROVED = "review_approved"
    PR_MERGED = "pr_merged"
    DEPLOY_VERIFIED = "deploy_verified"
    HUMAN_APPROVAL = "human_approval"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Evidence:
    """Parsed evidence map.

    Attributes:
        known: Values for recognized tags
        unrecognized: Values for tags outside ``EvidenceKind``, kept so that
            preconditions naming a newer tag can still be satisfied
    """

    known: Mapping[EvidenceKind, bool] = field(default_factory=dict)
    unrecognized: Mapping[str, bool] = field(default_factory=dict)

    def is_true(self, tag: str) -> bool:
        """Check whether a tag is present and explicitly true.

        Absent tags are never true (fail-closed).
        """
        try:
            kind = EvidenceKind(tag)
        except ValueError:
            return self.unrecognized.get(tag) is True
        return self.known.get(kind) is True


def parse_evidence(raw: Mapping[str, object] | Evidence | None) -> Evidence:
    """Split a raw evidence map into known and unrecognized tags.

    Only literal ``True`` counts as satisfied; truthy non-bool values
    (``"yes"``, ``1``) are recorded as ``False``.

    Args:
        raw: Raw ``tag -> value`` map from an external caller

    Returns:
        Parsed ``Evidence``
    """
    if isinstance(raw, Evidence):
        return raw
    known: dict[EvidenceKind, bool] = {}
    unrecognized: dict[str, bool] = {}
    for tag, value in (raw or {}).items():
        flag = value is True
        try:
            known[EvidenceKind(tag)] = flag
        except ValueError:
            unrecognized[tag] = flag
    if unrecognized:
        log.warning("evidence_tags_unrecognized", tags=sorted(unrecognized))
    return Evidence(known=known, unrecognized=unrecognized)
