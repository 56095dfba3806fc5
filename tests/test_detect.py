import asyncio
import base64
import json
from typing import Any, Callable, Dict, List

import httpx
import pytest

from slsa_delegator.detect import (
    GENERIC_GENERATOR_WORKFLOW,
    decode_oidc_claims,
    detect_workflow_from_context,
    detect_workflow_from_oidc,
    identity_from_job_workflow_ref,
    identity_from_referenced_workflows,
    resolve_workflow_identity,
    used_self_hosted_runner_labels,
)
from slsa_delegator.errors import (
    AmbiguousWorkflowReference,
    AudienceMismatch,
    GitHubAPIError,
    MissingWorkflowRef,
    NoReusableWorkflow,
    SelfHostedRunnerDetected,
)
from slsa_delegator.github import GitHubClient, OIDCTokenRequester
from slsa_delegator.models import TrustedEnvironment, WorkflowIdentity

RUNS = "/repos/acme/project/actions/runs/3790385865"
TRUSTED = "slsa-framework/slsa-github-generator"


def _jwt(claims: Dict[str, Any]) -> str:
    payload = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"eyJhbGciOiJSUzI1NiJ9.{payload}.c2lnbmF0dXJl"


def _requester(claims: Dict[str, Any]) -> OIDCTokenRequester:
    token = _jwt(claims)
    return OIDCTokenRequester(
        "https://token.example/request",
        "request-token",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"value": token})),
    )


def test_decode_oidc_claims_handles_missing_padding() -> None:
    claims = {"aud": "x", "job_workflow_ref": "a/b/c.yml@refs/heads/main"}
    assert decode_oidc_claims(_jwt(claims)) == claims
    with pytest.raises(ValueError):
        decode_oidc_claims("no-dots")


def test_identity_from_job_workflow_ref_splits_on_last_at() -> None:
    identity = identity_from_job_workflow_ref(
        "slsa-framework/slsa-github-generator/.github/workflows/builder.yml@refs/tags/v1.9.0"
    )
    assert identity == WorkflowIdentity(
        repository="slsa-framework/slsa-github-generator",
        ref="refs/tags/v1.9.0",
        workflow=".github/workflows/builder.yml",
    )
    assert identity_from_job_workflow_ref("a/b/c.yml@x@y").ref == "y"


def test_detect_workflow_from_oidc() -> None:
    audience = "acme/project/detect-workflow-js"
    requester = _requester(
        {"aud": audience, "job_workflow_ref": f"{TRUSTED}/.github/workflows/b.yml@refs/tags/v2"}
    )
    identity = asyncio.run(detect_workflow_from_oidc(requester, audience))
    assert identity.repository == TRUSTED
    assert identity.ref == "refs/tags/v2"


def test_detect_workflow_from_oidc_checks_audience() -> None:
    requester = _requester({"aud": "someone-else", "job_workflow_ref": "a/b/c.yml@main"})
    with pytest.raises(AudienceMismatch):
        asyncio.run(detect_workflow_from_oidc(requester, "acme/project/detect-workflow-js"))


def test_detect_workflow_from_oidc_requires_job_workflow_ref() -> None:
    requester = _requester({"aud": "aud"})
    with pytest.raises(MissingWorkflowRef):
        asyncio.run(detect_workflow_from_oidc(requester, "aud"))


def test_referenced_workflows_ignore_other_repositories() -> None:
    referenced = [
        {"path": "fork/tool/x.yml@v1", "ref": "refs/tags/v1"},
        {"path": "acme/tool/x.yml@v1", "ref": "refs/tags/v1"},
    ]
    identity = identity_from_referenced_workflows(referenced, "acme/tool")
    assert identity == WorkflowIdentity(
        repository="acme/tool", ref="refs/tags/v1", workflow="x.yml"
    )


def test_referenced_workflows_must_agree() -> None:
    referenced = [
        {"path": "acme/tool/x.yml@v1", "ref": "refs/tags/v1"},
        {"path": "acme/tool/y.yml@v2", "ref": "refs/tags/v2"},
    ]
    with pytest.raises(AmbiguousWorkflowReference):
        identity_from_referenced_workflows(referenced, "acme/tool")


def test_referenced_workflows_require_ref() -> None:
    with pytest.raises(MissingWorkflowRef):
        identity_from_referenced_workflows([{"path": "acme/tool/x.yml@abc"}], "acme/tool")


@pytest.mark.parametrize(
    "referenced",
    [[], [{"path": "acme/toolbox/x.yml@v1", "ref": "refs/tags/v1"}]],
)
def test_referenced_workflows_without_match(referenced: List[Dict[str, Any]]) -> None:
    with pytest.raises(NoReusableWorkflow):
        identity_from_referenced_workflows(referenced, "acme/tool")


def test_context_strategy_uses_head_for_tooling_pull_requests(
    github_client: Callable[..., GitHubClient],
) -> None:
    run = {
        "event": "pull_request",
        "repository": {"full_name": TRUSTED},
        "head_repository": {"full_name": "contrib/slsa-github-generator"},
        "head_sha": "abc123",
        "path": ".github/workflows/e2e.yml",
        "referenced_workflows": [],
    }

    async def detect() -> WorkflowIdentity:
        async with github_client({f"/repos/{TRUSTED}/actions/runs/3790385865": run}) as client:
            return await detect_workflow_from_context(client, TRUSTED, "3790385865")

    assert asyncio.run(detect()) == WorkflowIdentity(
        repository="contrib/slsa-github-generator",
        ref="abc123",
        workflow=".github/workflows/e2e.yml",
    )


def test_context_strategy_filters_pull_requests_in_other_repositories(
    github_client: Callable[..., GitHubClient],
) -> None:
    run = {
        "event": "pull_request",
        "repository": {"full_name": "acme/project"},
        "head_repository": {"full_name": "contrib/project"},
        "head_sha": "abc123",
        "path": ".github/workflows/evil.yml",
        "referenced_workflows": [
            {
                "path": f"{TRUSTED}/.github/workflows/builder.yml@refs/tags/v2",
                "ref": "refs/tags/v2",
            }
        ],
    }

    async def detect() -> WorkflowIdentity:
        async with github_client({RUNS: run}) as client:
            return await detect_workflow_from_context(client, "acme/project", "3790385865")

    assert asyncio.run(detect()) == WorkflowIdentity(
        repository=TRUSTED, ref="refs/tags/v2", workflow=".github/workflows/builder.yml"
    )


def test_context_strategy_rejects_pull_requests_without_tooling(
    github_client: Callable[..., GitHubClient],
) -> None:
    run = {
        "event": "pull_request",
        "repository": {"full_name": "acme/project"},
        "head_repository": {"full_name": "contrib/project"},
        "head_sha": "abc123",
        "path": ".github/workflows/evil.yml",
        "referenced_workflows": [],
    }

    async def detect() -> WorkflowIdentity:
        async with github_client({RUNS: run}) as client:
            return await detect_workflow_from_context(client, "acme/project", "3790385865")

    with pytest.raises(NoReusableWorkflow):
        asyncio.run(detect())


@pytest.mark.parametrize("event", ["push", "pull_request"])
def test_context_strategy_requires_referenced_workflows(
    github_client: Callable[..., GitHubClient], event: str
) -> None:
    run = {"event": event, "repository": {"full_name": TRUSTED}}

    async def detect() -> WorkflowIdentity:
        async with github_client({f"/repos/{TRUSTED}/actions/runs/3790385865": run}) as client:
            return await detect_workflow_from_context(client, TRUSTED, "3790385865")

    with pytest.raises(NoReusableWorkflow):
        asyncio.run(detect())


def _routes(workflow: str, job_labels: List[str], runner_labels: List[str]) -> Dict[str, Any]:
    return {
        RUNS: {
            "event": "push",
            "referenced_workflows": [
                {"path": f"{TRUSTED}/{workflow}@refs/tags/v2", "ref": "refs/tags/v2"}
            ],
        },
        f"{RUNS}/jobs": {"jobs": [{"id": 1, "labels": job_labels}]},
        "/repos/acme/project/actions/runners": {
            "runners": [{"id": 9, "labels": [{"name": name} for name in runner_labels]}]
        },
    }


def test_resolve_falls_back_without_oidc(
    trusted_env: TrustedEnvironment,
    github_client: Callable[..., GitHubClient],
) -> None:
    async def resolve() -> WorkflowIdentity:
        routes = _routes(".github/workflows/builder_go_slsa3.yml", [], [])
        async with github_client(routes) as client:
            return await resolve_workflow_identity(trusted_env, client)

    identity = asyncio.run(resolve())
    assert identity.repository == TRUSTED
    assert identity.workflow == ".github/workflows/builder_go_slsa3.yml"


def test_resolve_prefers_oidc(
    environ: Dict[str, str],
    github_client: Callable[..., GitHubClient],
) -> None:
    env = TrustedEnvironment.from_environ(
        {
            **environ,
            "ACTIONS_ID_TOKEN_REQUEST_URL": "https://token.example/request",
            "ACTIONS_ID_TOKEN_REQUEST_TOKEN": "request-token",
        }
    )
    requester = _requester(
        {
            "aud": "acme/project/detect-workflow-js",
            "job_workflow_ref": f"{TRUSTED}/.github/workflows/delegator.yml@refs/tags/v3",
        }
    )

    async def resolve() -> WorkflowIdentity:
        async with github_client({}) as client:
            return await resolve_workflow_identity(env, client, requester)

    assert asyncio.run(resolve()).ref == "refs/tags/v3"


def test_generic_generator_rejects_self_hosted_runners(
    trusted_env: TrustedEnvironment,
    github_client: Callable[..., GitHubClient],
) -> None:
    routes = _routes(GENERIC_GENERATOR_WORKFLOW, ["self-hosted", "gpu"], ["self-hosted", "gpu"])

    async def resolve() -> WorkflowIdentity:
        async with github_client(routes) as client:
            return await resolve_workflow_identity(trusted_env, client)

    with pytest.raises(SelfHostedRunnerDetected) as excinfo:
        asyncio.run(resolve())
    assert excinfo.value.labels == ["gpu", "self-hosted"]


def test_generic_generator_accepts_hosted_runners(
    trusted_env: TrustedEnvironment,
    github_client: Callable[..., GitHubClient],
) -> None:
    routes = _routes(GENERIC_GENERATOR_WORKFLOW, ["ubuntu-latest"], ["self-hosted"])

    async def resolve() -> WorkflowIdentity:
        async with github_client(routes) as client:
            return await resolve_workflow_identity(trusted_env, client)

    assert asyncio.run(resolve()).workflow == GENERIC_GENERATOR_WORKFLOW


def test_used_self_hosted_runner_labels_is_sorted_intersection(
    github_client: Callable[..., GitHubClient],
) -> None:
    routes = _routes("x.yml", ["linux", "self-hosted", "arm64"], ["arm64", "self-hosted", "big"])

    async def labels() -> List[str]:
        async with github_client(routes) as client:
            return await used_self_hosted_runner_labels(client, "acme/project", "3790385865")

    assert asyncio.run(labels()) == ["arm64", "self-hosted"]


def test_used_self_hosted_runner_labels_cancels_pending_request() -> None:
    cancelled: List[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/jobs"):
            return httpx.Response(500, json={"message": "Server Error"})
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.append(request.url.path)
            raise
        return httpx.Response(200, json={"runners": []})

    async def labels() -> List[str]:
        transport = httpx.MockTransport(handler)
        async with GitHubClient("test-token", transport=transport) as client:
            with pytest.raises(GitHubAPIError, match="500"):
                await used_self_hosted_runner_labels(client, "acme/project", "3790385865")
            return list(cancelled)

    assert asyncio.run(labels()) == ["/repos/acme/project/actions/runners"]
