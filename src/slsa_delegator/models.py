from __future__ import annotations

import os
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt

TOKEN_VERSION = 1
TOKEN_CONTEXT = "SLSA delegator framework"
SLSA_VERSIONS = {"v0.2": "0.2", "v1-rc1": "1.0-rc1", "v1.0": "1.0"}
PULL_REQUEST_EVENTS = {"pull_request", "merge_group"}

InputValue = Union[bool, int, float, str]


class BuilderInfo(BaseModel):
    audience: str = ""
    runner_label: str = ""
    private_repository: StrictBool = False
    rekor_log_public: Optional[Union[bool, str]] = None
    model_config = ConfigDict(extra="forbid")


class GitHubContext(BaseModel):
    actor_id: str = ""
    event_name: str = ""
    event_payload_sha256: str = ""
    ref: str = ""
    ref_type: str = ""
    repository: str = ""
    repository_id: str = ""
    repository_owner_id: str = ""
    run_attempt: str = ""
    run_id: str = ""
    run_number: str = ""
    sha: str = ""
    workflow_ref: str = ""
    workflow_sha: str = ""
    # Informational only, never cross-checked.
    actor: str = ""
    repository_owner: str = ""
    job: str = ""
    workflow: str = ""
    event_path: str = ""
    model_config = ConfigDict(extra="forbid")


class RunnerInfo(BaseModel):
    arch: str = ""
    name: str = ""
    os: str = ""
    model_config = ConfigDict(extra="forbid")


class ImageInfo(BaseModel):
    os: str = ""
    version: str = ""
    model_config = ConfigDict(extra="forbid")


class BuildArtifactsAction(BaseModel):
    path: str = ""
    model_config = ConfigDict(extra="forbid")


class ToolActions(BaseModel):
    build_artifacts: BuildArtifactsAction = Field(default_factory=BuildArtifactsAction)
    model_config = ConfigDict(extra="forbid")


class ToolInfo(BaseModel):
    actions: ToolActions = Field(default_factory=ToolActions)
    # Reusable workflows only accept boolean, number or string inputs.
    inputs: Dict[str, InputValue] = Field(default_factory=dict)
    masked_inputs: List[str] = Field(default_factory=list)
    model_config = ConfigDict(extra="forbid")


class Checkout(BaseModel):
    sha1: str = ""
    model_config = ConfigDict(extra="forbid")


class SourceInfo(BaseModel):
    checkout: Checkout = Field(default_factory=Checkout)
    model_config = ConfigDict(extra="forbid")


class RawClaim(BaseModel):
    # "1", true and 1.0 are rejected rather than coerced to 1.
    version: StrictInt
    slsa_version: str = Field(alias="slsaVersion")
    context: str
    builder: BuilderInfo
    github: GitHubContext
    runner: RunnerInfo = Field(default_factory=RunnerInfo)
    image: ImageInfo = Field(default_factory=ImageInfo)
    tool: ToolInfo
    source: Optional[SourceInfo] = None

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    def model_post_init(self, __context: Any) -> None:
        if self.slsa_version not in SLSA_VERSIONS:
            raise ValueError(
                f"unsupported slsaVersion: {self.slsa_version}; "
                f"expected one of {','.join(sorted(SLSA_VERSIONS))}"
            )

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class CertificateIdentity(BaseModel):
    uri: str
    repository: str
    ref: str
    commit_sha: str
    path: str
    model_config = ConfigDict(extra="forbid", frozen=True)


class WorkflowIdentity(BaseModel):
    repository: str
    ref: str
    workflow: str
    model_config = ConfigDict(extra="forbid", frozen=True)


class TrustedEnvironment(BaseModel):
    actor: str = ""
    actor_id: str = ""
    event_name: str = ""
    event_path: str = ""
    ref: str = ""
    ref_type: str = ""
    repository: str = ""
    repository_id: str = ""
    repository_owner: str = ""
    repository_owner_id: str = ""
    run_attempt: str = ""
    run_id: str = ""
    run_number: str = ""
    sha: str = ""
    workflow: str = ""
    workflow_ref: str = ""
    workflow_sha: str = ""
    job: str = ""
    workspace: str = ""
    runner_temp: str = ""
    runner_arch: str = ""
    runner_name: str = ""
    runner_os: str = ""
    image_os: str = ""
    image_version: str = ""
    id_token_request_url: str = ""
    id_token_request_token: str = ""

    model_config = ConfigDict(extra="forbid", frozen=True)

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None) -> "TrustedEnvironment":
        env = os.environ if environ is None else environ
        return cls(
            actor=env.get("GITHUB_ACTOR", ""),
            actor_id=env.get("GITHUB_ACTOR_ID", ""),
            event_name=env.get("GITHUB_EVENT_NAME", ""),
            event_path=env.get("GITHUB_EVENT_PATH", ""),
            ref=env.get("GITHUB_REF", ""),
            ref_type=env.get("GITHUB_REF_TYPE", ""),
            repository=env.get("GITHUB_REPOSITORY", ""),
            repository_id=env.get("GITHUB_REPOSITORY_ID", ""),
            repository_owner=env.get("GITHUB_REPOSITORY_OWNER", ""),
            repository_owner_id=env.get("GITHUB_REPOSITORY_OWNER_ID", ""),
            run_attempt=env.get("GITHUB_RUN_ATTEMPT", ""),
            run_id=env.get("GITHUB_RUN_ID", ""),
            run_number=env.get("GITHUB_RUN_NUMBER", ""),
            sha=env.get("GITHUB_SHA", ""),
            workflow=env.get("GITHUB_WORKFLOW", ""),
            workflow_ref=env.get("GITHUB_WORKFLOW_REF", ""),
            workflow_sha=env.get("GITHUB_WORKFLOW_SHA", ""),
            job=env.get("GITHUB_JOB", ""),
            workspace=env.get("GITHUB_WORKSPACE", ""),
            runner_temp=env.get("RUNNER_TEMP", ""),
            runner_arch=env.get("RUNNER_ARCH", ""),
            runner_name=env.get("RUNNER_NAME", ""),
            runner_os=env.get("RUNNER_OS", ""),
            image_os=env.get("ImageOS", ""),
            image_version=env.get("ImageVersion", ""),
            id_token_request_url=env.get("ACTIONS_ID_TOKEN_REQUEST_URL", ""),
            id_token_request_token=env.get("ACTIONS_ID_TOKEN_REQUEST_TOKEN", ""),
        )

    @property
    def oidc_available(self) -> bool:
        return bool(self.id_token_request_url and self.id_token_request_token)

    @property
    def is_pull_request(self) -> bool:
        return self.event_name in PULL_REQUEST_EVENTS
