from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Union

import yaml

from slsa_delegator.errors import MalformedWorkflow
from slsa_delegator.github import GitHubClient
from slsa_delegator.models import InputValue, RawClaim

logger = logging.getLogger(__name__)


def _declared_inputs(workflow: Mapping[Any, Any]) -> Mapping[str, Any]:
    # YAML 1.1 reads a bare `on:` key as the boolean True.
    triggers = workflow.get("on", workflow.get(True))
    if not isinstance(triggers, dict):
        raise MalformedWorkflow("workflow has no 'on' section")
    if "workflow_call" not in triggers:
        raise MalformedWorkflow("workflow is not a reusable workflow: no 'on.workflow_call'")
    call = triggers["workflow_call"] or {}
    if not isinstance(call, dict):
        raise MalformedWorkflow("'on.workflow_call' is not a mapping")
    declared = call.get("inputs") or {}
    if not isinstance(declared, dict):
        raise MalformedWorkflow("'on.workflow_call.inputs' is not a mapping")
    return declared


def filter_workflow_inputs(
    claim: RawClaim, workflow_yaml: Union[str, bytes]
) -> Dict[str, InputValue]:
    """Keep the claim's tool inputs that the tool workflow declares."""
    try:
        workflow = yaml.safe_load(workflow_yaml)
    except yaml.YAMLError as exc:
        raise MalformedWorkflow(f"invalid workflow YAML: {exc}") from exc
    if not isinstance(workflow, dict):
        raise MalformedWorkflow("workflow YAML is not a mapping")

    declared = _declared_inputs(workflow)
    kept = {name: value for name, value in claim.tool.inputs.items() if name in declared}
    dropped = sorted(set(claim.tool.inputs) - set(kept))
    if dropped:
        logger.debug("dropping undeclared tool inputs: %s", ", ".join(dropped))
    return kept


async def fetch_tool_workflow(client: GitHubClient, repository: str, sha: str, path: str) -> bytes:
    logger.debug("fetching %s from %s@%s", path, repository, sha)
    return await client.get_content(repository, path, sha)


def with_filtered_inputs(claim: RawClaim, workflow_yaml: Union[str, bytes]) -> RawClaim:
    inputs = filter_workflow_inputs(claim, workflow_yaml)
    # Dropped inputs have nothing left to mask; unknown names still fail later.
    masked = [
        name
        for name in claim.tool.masked_inputs
        if name in inputs or name not in claim.tool.inputs
    ]
    tool = claim.tool.model_copy(update={"inputs": inputs, "masked_inputs": masked})
    return claim.model_copy(update={"tool": tool})
