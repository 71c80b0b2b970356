"""Issue drafts and whitelist-based patching."""

from canonflow.drafts.models import PATCHABLE_FIELDS, IssueDraft, Guards, Kpi, Verify
from canonflow.drafts.patch import DiffSummary, PatchIssue, PatchResult, apply_patch, validate_patch

__all__ = [
    "PATCHABLE_FIELDS",
    "DiffSummary",
    "Guards",
    "IssueDraft",
    "Kpi",
    "PatchIssue",
    "PatchResult",
    "Verify",
    "apply_patch",
    "validate_patch",
]
