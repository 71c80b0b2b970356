"""Load automation policies from YAML.

File format::

    version: "2026.10"
    policies:
      - action_type: issue_publish
        allowed_envs: [staging]
        max_runs_per_window: 1
        window_seconds: 3600
        idempotency_key_template: [owner, repo, issueNumber]

camelCase keys (``allowedEnvs``, ``maxRunsPerWindow``...) are accepted as
well. Malformed input is fatal at startup.
"""

from importlib import resources
from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError

from canonflow.exceptions import PolicyConfigError, SpecLoadError
from canonflow.policy.models import PolicyAction, PolicySet

log = structlog.get_logger(__name__)

DEFAULT_POLICIES_FILE = "default-policies.yaml"


def load_policy_set(path: str | Path) -> PolicySet:
    """Load and validate a policy file.

    Raises:
        SpecLoadError: If the file is missing, unparsable, schema-invalid or
            defines the same action type twice
        PolicyConfigError: If a policy has an inconsistent rate window
    """
    policy_file = Path(path)
    if not policy_file.is_file():
        raise SpecLoadError("Policy file not found", path=str(policy_file))
    try:
        data = yaml.safe_load(policy_file.read_text(encoding="utf-8"))
    except OSError as e:
        raise SpecLoadError(f"Cannot read policy file: {e}", path=str(policy_file)) from e
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML syntax: {e}", path=str(policy_file)) from e
    if not isinstance(data, dict):
        raise SpecLoadError("Policy file must be a YAML mapping", path=str(policy_file))

    raw_policies = data.get("policies") or []
    if not isinstance(raw_policies, list):
        raise SpecLoadError("'policies' must be a list", path=str(policy_file))

    policies: list[PolicyAction] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_policies):
        try:
            policy = PolicyAction.model_validate(raw)
        except ValidationError as e:
            raise SpecLoadError(f"Invalid policy at index {index}: {e}", path=str(policy_file)) from e
        if policy.action_type in seen:
            raise SpecLoadError(f"Duplicate policy for action '{policy.action_type}'", path=str(policy_file))
        error = policy.rate_limit_config_error()
        if error:
            raise PolicyConfigError(error, action_type=policy.action_type)
        seen.add(policy.action_type)
        policies.append(policy)

    policy_set = PolicySet(version=str(data.get("version", "1")), policies=tuple(policies))
    log.info(
        "policies_loaded",
        path=str(policy_file),
        version=policy_set.version,
        content_hash=policy_set.content_hash,
        count=len(policies),
    )
    return policy_set


def default_policies_path() -> Path:
    """Policy file bundled with the package."""
    return Path(str(resources.files("canonflow.policy") / "definitions" / DEFAULT_POLICIES_FILE))


def load_default_policies() -> PolicySet:
    return load_policy_set(default_policies_path())
