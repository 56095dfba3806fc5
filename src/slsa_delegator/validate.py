from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Mapping, Sequence

from slsa_delegator.errors import (
    EmptyField,
    FieldMismatch,
    FieldNotAllowed,
    UnknownMaskedInput,
)
from slsa_delegator.files import safe_file_sha256
from slsa_delegator.models import (
    TOKEN_CONTEXT,
    TOKEN_VERSION,
    GitHubContext,
    RawClaim,
    TrustedEnvironment,
)

logger = logging.getLogger(__name__)

MASK = "***"
DEFAULT_RUNNER_LABELS = ("ubuntu-latest",)


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def _strict_equal(actual: Any, expected: Any) -> bool:
    return type(actual) is type(expected) and actual == expected


def validate_equals(name: str, actual: Any, expected: Any, *, allow_empty: bool = False) -> None:
    """Check that a claimed value matches the trusted one.

    Two empty values are treated as unset rather than equal, so they fail
    unless ``allow_empty`` is set.
    """
    if not _strict_equal(actual, expected):
        raise FieldMismatch(name, actual, expected)
    if _is_empty(actual) and not allow_empty:
        raise EmptyField(name)


def validate_one_of(name: str, actual: Any, candidates: Sequence[Any]) -> None:
    for candidate in candidates:
        if _strict_equal(actual, candidate):
            return
    raise FieldNotAllowed(name, actual, list(candidates))


def validate_non_empty(name: str, actual: Any) -> None:
    if _is_empty(actual):
        raise EmptyField(name)


def validate_starts_with(name: str, actual: str, prefix: str) -> None:
    if not actual.startswith(prefix):
        raise FieldMismatch(
            name,
            actual,
            prefix,
            message=f"invalid {name}: expected '{actual}' to start with '{prefix}'",
        )


def validate_github_context(claimed: GitHubContext, env: TrustedEnvironment) -> None:
    validate_equals("github.actor_id", claimed.actor_id, env.actor_id)
    validate_equals("github.event_name", claimed.event_name, env.event_name)

    # Checked first so a missing event file reports a clear error.
    validate_non_empty("GITHUB_EVENT_PATH", env.event_path)
    validate_equals(
        "github.event_payload_sha256",
        claimed.event_payload_sha256,
        safe_file_sha256(env.event_path, env),
    )

    validate_equals("github.ref", claimed.ref, env.ref)
    validate_equals("github.ref_type", claimed.ref_type, env.ref_type)
    validate_equals("github.repository", claimed.repository, env.repository)
    validate_equals("github.repository_id", claimed.repository_id, env.repository_id)
    validate_equals(
        "github.repository_owner_id", claimed.repository_owner_id, env.repository_owner_id
    )
    validate_equals("github.run_attempt", claimed.run_attempt, env.run_attempt)
    validate_equals("github.run_id", claimed.run_id, env.run_id)
    validate_equals("github.run_number", claimed.run_number, env.run_number)
    validate_equals("github.sha", claimed.sha, env.sha)
    validate_equals("github.workflow_ref", claimed.workflow_ref, env.workflow_ref)
    validate_starts_with("github.workflow_ref", claimed.workflow_ref, f"{env.repository}/")
    validate_equals("github.workflow_sha", claimed.workflow_sha, env.workflow_sha)


def validate_claim(
    claim: RawClaim,
    env: TrustedEnvironment,
    *,
    recipient: str,
    runner_labels: Sequence[str] = DEFAULT_RUNNER_LABELS,
) -> None:
    validate_equals("version", claim.version, TOKEN_VERSION)
    validate_equals("context", claim.context, TOKEN_CONTEXT)
    validate_equals("builder.audience", claim.builder.audience, recipient)
    validate_one_of("builder.runner_label", claim.builder.runner_label, list(runner_labels))
    validate_github_context(claim.github, env)
    validate_non_empty(
        "tool.actions.build_artifacts.path", claim.tool.actions.build_artifacts.path
    )
    logger.debug("claim for %s validated against trusted environment", claim.github.repository)


def mask_inputs(inputs: Mapping[str, Any], masked_names: Iterable[str]) -> Dict[str, Any]:
    masked: Dict[str, Any] = dict(inputs)
    for name in masked_names:
        if not name or not name.strip():
            continue
        if name not in masked:
            raise UnknownMaskedInput(name)
        # Same mask GitHub uses for secrets.
        masked[name] = MASK
    return masked


def mask_claim(claim: RawClaim) -> RawClaim:
    inputs = mask_inputs(claim.tool.inputs, claim.tool.masked_inputs)
    tool = claim.tool.model_copy(update={"inputs": inputs})
    return claim.model_copy(update={"tool": tool})
