from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from slsa_delegator.errors import (
    AmbiguousWorkflowReference,
    AudienceMismatch,
    EmptyField,
    MissingWorkflowRef,
    NoReusableWorkflow,
    SelfHostedRunnerDetected,
)
from slsa_delegator.github import GitHubClient, OIDCTokenRequester
from slsa_delegator.models import PULL_REQUEST_EVENTS, TrustedEnvironment, WorkflowIdentity

logger = logging.getLogger(__name__)

TRUSTED_TOOLING_REPOSITORY = "slsa-framework/slsa-github-generator"
GENERIC_GENERATOR_WORKFLOW = ".github/workflows/generator_generic_slsa3.yml"


def decode_oidc_claims(id_token: str) -> Dict[str, Any]:
    parts = id_token.split(".")
    if len(parts) < 2:
        raise ValueError("malformed OIDC token")
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError(f"malformed OIDC token payload: {exc}") from exc
    if not isinstance(claims, dict):
        raise ValueError("malformed OIDC token payload")
    return claims


def _split_workflow_path(path: str) -> Tuple[str, str]:
    owner, _, rest = path.partition("/")
    repo, _, workflow = rest.partition("/")
    return f"{owner}/{repo}", workflow


def identity_from_job_workflow_ref(job_workflow_ref: str) -> WorkflowIdentity:
    # owner/repo/.github/workflows/build.yml@refs/tags/v1.2.3
    path, sep, ref = job_workflow_ref.rpartition("@")
    if not sep:
        raise MissingWorkflowRef(f"job_workflow_ref has no ref: {job_workflow_ref}")
    repository, workflow = _split_workflow_path(path)
    return WorkflowIdentity(repository=repository, ref=ref, workflow=workflow)


async def detect_workflow_from_oidc(
    requester: OIDCTokenRequester, audience: str
) -> WorkflowIdentity:
    # The token is freshly minted by the runtime, so its signature is not checked here.
    claims = decode_oidc_claims(await requester.get_id_token(audience))
    if claims.get("aud") != audience:
        raise AudienceMismatch(f"invalid audience from OIDC token: {claims.get('aud')!r}")
    job_workflow_ref = claims.get("job_workflow_ref")
    if not isinstance(job_workflow_ref, str) or not job_workflow_ref:
        raise MissingWorkflowRef("job_workflow_ref missing from OIDC token")
    return identity_from_job_workflow_ref(job_workflow_ref)


def identity_from_referenced_workflows(
    referenced_workflows: List[Mapping[str, Any]], trusted_repository: str
) -> WorkflowIdentity:
    found: Optional[WorkflowIdentity] = None
    for entry in referenced_workflows:
        path = str(entry.get("path", "")).split("@", 1)[0]
        repository, workflow = _split_workflow_path(path)
        if repository != trusted_repository:
            continue
        ref = entry.get("ref")
        if not ref:
            raise MissingWorkflowRef(
                f"referenced {trusted_repository} workflow missing ref: "
                "was the workflow invoked by digest?"
            )
        # Every invocation of the tooling in one caller must agree.
        if found is not None and found.repository != repository:
            raise AmbiguousWorkflowReference(
                f"unexpected mismatch of repositories: {found.repository} != {repository}"
            )
        if found is not None and found.ref != ref:
            raise AmbiguousWorkflowReference(
                f"unexpected mismatch of references: {found.ref} != {ref}"
            )
        found = WorkflowIdentity(repository=repository, ref=ref, workflow=workflow)
    if found is None:
        raise NoReusableWorkflow(f"no reusable workflow from {trusted_repository} detected")
    return found


async def detect_workflow_from_context(
    client: GitHubClient,
    repository: str,
    run_id: str,
    *,
    trusted_repository: str = TRUSTED_TOOLING_REPOSITORY,
) -> WorkflowIdentity:
    run = await client.get_workflow_run(repository, run_id)
    referenced = run.get("referenced_workflows")
    if not isinstance(referenced, list):
        raise NoReusableWorkflow(f"no reusable workflows detected for run {run_id}")
    run_repository = (run.get("repository") or {}).get("full_name")
    # Only pull requests against the tooling repository itself build from their head.
    if run.get("event") in PULL_REQUEST_EVENTS and run_repository == trusted_repository:
        head = run.get("head_repository") or {}
        return WorkflowIdentity(
            repository=str(head.get("full_name", "")),
            ref=str(run.get("head_sha", "")),
            workflow=str(run.get("path", "")),
        )
    return identity_from_referenced_workflows(referenced, trusted_repository)


async def used_self_hosted_runner_labels(
    client: GitHubClient, repository: str, run_id: str
) -> List[str]:
    tasks = (
        asyncio.ensure_future(client.list_jobs_for_run(repository, run_id)),
        asyncio.ensure_future(client.list_self_hosted_runners(repository)),
    )
    try:
        jobs, runners = await asyncio.gather(*tasks)
    except BaseException:
        # The first failure wins; the other request must not outlive the client.
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    job_labels = {label for job in jobs for label in job.get("labels") or []}
    runner_labels = {
        label.get("name")
        for runner in runners
        for label in runner.get("labels") or []
        if isinstance(label, dict)
    }
    return sorted(job_labels & runner_labels)


async def ensure_github_hosted_runners(
    client: GitHubClient, repository: str, run_id: str
) -> None:
    labels = await used_self_hosted_runner_labels(client, repository, run_id)
    if labels:
        raise SelfHostedRunnerDetected(labels)
    logger.info("no self-hosted runners detected")


async def resolve_workflow_identity(
    env: TrustedEnvironment,
    client: GitHubClient,
    requester: Optional[OIDCTokenRequester] = None,
    *,
    trusted_repository: str = TRUSTED_TOOLING_REPOSITORY,
) -> WorkflowIdentity:
    if not env.repository:
        raise EmptyField("GITHUB_REPOSITORY")

    # PR tokens may exist but do not carry the head sha, so PRs use the run record.
    if requester is not None and env.oidc_available and not env.is_pull_request:
        audience = f"{env.repository}/detect-workflow-js"
        identity = await detect_workflow_from_oidc(requester, audience)
    else:
        logger.info(
            "OIDC token unavailable, this may be due to missing id-token: write permissions"
        )
        identity = await detect_workflow_from_context(
            client, env.repository, env.run_id, trusted_repository=trusted_repository
        )

    for name in ("repository", "ref", "workflow"):
        if not getattr(identity, name):
            raise EmptyField(f"detected {name}")

    # The generic generator accepts artifacts built by arbitrary caller jobs.
    if identity.workflow == GENERIC_GENERATOR_WORKFLOW:
        await ensure_github_hosted_runners(client, env.repository, env.run_id)
    return identity

