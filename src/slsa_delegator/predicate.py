from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Annotated, Any, ClassVar, Dict, List, Mapping, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, PlainSerializer

from slsa_delegator.errors import EmptyField, InvalidDigest, PathDerivationError
from slsa_delegator.files import read_event_payload
from slsa_delegator.github import GitHubClient
from slsa_delegator.models import GitHubContext, RawClaim, TrustedEnvironment
from slsa_delegator.validate import mask_claim

logger = logging.getLogger(__name__)

DELEGATOR_BUILD_TYPE = (
    "https://github.com/slsa-framework/slsa-github-generator/delegator-generic@v0"
)
SHA1_PATTERN = re.compile(r"^[a-fA-F0-9]{40}$")

_FROZEN = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [_thaw(item) for item in value]
    return value


# Read-only views all the way down; dumped back to plain JSON types.
FrozenMapping = Annotated[Mapping[str, Any], AfterValidator(_freeze), PlainSerializer(_thaw)]


class ResourceDescriptor(BaseModel):
    uri: str
    digest: FrozenMapping
    model_config = _FROZEN


class BuilderId(BaseModel):
    id: str
    model_config = _FROZEN


class BuildDefinition(BaseModel):
    build_type: str = Field(alias="buildType")
    external_parameters: FrozenMapping = Field(alias="externalParameters")
    internal_parameters: FrozenMapping = Field(alias="internalParameters")
    resolved_dependencies: List[ResourceDescriptor] = Field(alias="resolvedDependencies")
    model_config = _FROZEN


class RunMetadata(BaseModel):
    invocation_id: str = Field(alias="invocationId")
    model_config = _FROZEN


class RunDetails(BaseModel):
    builder: BuilderId
    metadata: RunMetadata
    model_config = _FROZEN


class ProvenanceV1(BaseModel):
    predicate_type: ClassVar[str] = "https://slsa.dev/provenance/v1"

    build_definition: BuildDefinition = Field(alias="buildDefinition")
    run_details: RunDetails = Field(alias="runDetails")
    model_config = _FROZEN

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class ConfigSource(BaseModel):
    uri: str
    digest: FrozenMapping
    entry_point: str = Field(alias="entryPoint")
    model_config = _FROZEN


class Invocation(BaseModel):
    config_source: ConfigSource = Field(alias="configSource")
    parameters: FrozenMapping
    environment: FrozenMapping
    model_config = _FROZEN


class Completeness(BaseModel):
    parameters: bool = False
    environment: bool = False
    materials: bool = False
    model_config = _FROZEN


class MetadataV02(BaseModel):
    build_invocation_id: str = Field(alias="buildInvocationId")
    completeness: Completeness
    model_config = _FROZEN


class ProvenanceV02(BaseModel):
    predicate_type: ClassVar[str] = "https://slsa.dev/provenance/v0.2"

    builder: BuilderId
    build_type: str = Field(alias="buildType")
    invocation: Invocation
    metadata: MetadataV02
    materials: List[ResourceDescriptor]
    model_config = _FROZEN

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


Predicate = Union[ProvenanceV1, ProvenanceV02]


@dataclass(frozen=True)
class TrustRecord:
    """Version-agnostic data every predicate layout is projected from."""

    claim: RawClaim
    builder_id: str
    triggering_actor_id: str
    trigger_uri: str
    trigger_sha1: str
    source_uri: str
    source_sha1: str
    workflow_path: str
    event_payload: Mapping[str, Any]


def create_uri(repository: str, ref: str) -> str:
    if not repository:
        raise EmptyField("github.repository")
    suffix = f"@{ref}" if ref else ""
    return f"git+https://github.com/{repository}{suffix}"


def _validate_sha1(sha1: str) -> str:
    if not SHA1_PATTERN.match(sha1):
        raise InvalidDigest(f"invalid sha1: {sha1}")
    return sha1


def source_uri(claim: RawClaim) -> str:
    # A checkout sha1 override means the ref no longer describes what was built.
    if claim.source is not None and claim.source.checkout.sha1:
        return create_uri(claim.github.repository, "")
    return create_uri(claim.github.repository, claim.github.ref)


def source_sha1(claim: RawClaim) -> str:
    override = claim.source.checkout.sha1 if claim.source is not None else ""
    return _validate_sha1(override or claim.github.sha)


def workflow_path(github: GitHubContext) -> str:
    # octocat/hello-world/.github/workflows/my-workflow.yml@refs/heads/my_branch
    prefix = f"{github.repository}/"
    if not github.workflow_ref.startswith(prefix):
        raise PathDerivationError(
            f"workflow ref '{github.workflow_ref}' does not start with '{prefix}'"
        )
    return github.workflow_ref[len(prefix) :].split("@", 1)[0]


def resolve_triggering_actor_id(run: Mapping[str, Any], claim: RawClaim) -> str:
    actor = run.get("triggering_actor")
    if isinstance(actor, dict) and actor.get("id") is not None:
        return str(actor["id"])
    return claim.github.actor_id


async def build_trust_record(
    claim: RawClaim,
    builder_id: str,
    client: GitHubClient,
    env: TrustedEnvironment,
) -> TrustRecord:
    masked = mask_claim(claim)
    # The run id has already been validated against the trusted environment.
    run = await client.get_workflow_run(claim.github.repository, claim.github.run_id)
    return TrustRecord(
        claim=masked,
        builder_id=builder_id,
        triggering_actor_id=resolve_triggering_actor_id(run, claim),
        trigger_uri=create_uri(claim.github.repository, claim.github.ref),
        trigger_sha1=_validate_sha1(claim.github.sha),
        source_uri=source_uri(claim),
        source_sha1=source_sha1(claim),
        workflow_path=workflow_path(claim.github),
        event_payload=read_event_payload(env),
    )


def _github_parameters(record: TrustRecord) -> Dict[str, Any]:
    gh = record.claim.github
    return {
        "GITHUB_ACTOR_ID": gh.actor_id,
        "GITHUB_EVENT_NAME": gh.event_name,
        "GITHUB_REF": gh.ref,
        "GITHUB_REF_TYPE": gh.ref_type,
        "GITHUB_REPOSITORY": gh.repository,
        "GITHUB_REPOSITORY_ID": gh.repository_id,
        "GITHUB_REPOSITORY_OWNER_ID": gh.repository_owner_id,
        "GITHUB_RUN_ATTEMPT": gh.run_attempt,
        "GITHUB_RUN_ID": gh.run_id,
        "GITHUB_RUN_NUMBER": gh.run_number,
        "GITHUB_SHA": gh.sha,
        "GITHUB_TRIGGERING_ACTOR_ID": record.triggering_actor_id,
        "GITHUB_WORKFLOW_REF": gh.workflow_ref,
        "GITHUB_WORKFLOW_SHA": gh.workflow_sha,
    }


def invocation_id_v1(github: GitHubContext) -> str:
    return (
        f"https://github.com/{github.repository}/actions/runs/"
        f"{github.run_id}/attempts/{github.run_attempt}"
    )


def invocation_id_v02(github: GitHubContext) -> str:
    # Consumers such as npmjs.com compare this against GITHUB_RUN_ID and
    # GITHUB_RUN_ATTEMPT, so it stays in the legacy format.
    return f"{github.run_id}-{github.run_attempt}"


def predicate_v1(record: TrustRecord) -> ProvenanceV1:
    gh = record.claim.github
    source = {"uri": record.source_uri, "digest": {"gitCommit": record.source_sha1}}
    internal_parameters = _github_parameters(record)
    external_parameters = {
        "inputs": dict(record.claim.tool.inputs),
        "vars": {},
        "workflow": {
            "ref": gh.ref,
            "repository": f"git+https://github.com/{gh.repository}",
            "path": record.workflow_path,
        },
        "source": source,
    }
    # Appended last, after the rest of the document is assembled.
    internal_parameters["GITHUB_EVENT_PAYLOAD"] = dict(record.event_payload)
    return ProvenanceV1(
        build_definition=BuildDefinition(
            build_type=DELEGATOR_BUILD_TYPE,
            external_parameters=external_parameters,
            internal_parameters=internal_parameters,
            resolved_dependencies=[ResourceDescriptor(**source)],
        ),
        run_details=RunDetails(
            builder=BuilderId(id=record.builder_id),
            metadata=RunMetadata(invocation_id=invocation_id_v1(gh)),
        ),
    )


def predicate_v02(record: TrustRecord) -> ProvenanceV02:
    gh = record.claim.github
    material = ResourceDescriptor(uri=record.trigger_uri, digest={"sha1": record.trigger_sha1})
    return ProvenanceV02(
        builder=BuilderId(id=record.builder_id),
        build_type=DELEGATOR_BUILD_TYPE,
        invocation=Invocation(
            config_source=ConfigSource(
                uri=record.trigger_uri,
                digest={"sha1": record.trigger_sha1},
                entry_point=record.workflow_path,
            ),
            parameters={"inputs": dict(record.claim.tool.inputs)},
            environment=_github_parameters(record),
        ),
        metadata=MetadataV02(
            build_invocation_id=invocation_id_v02(gh),
            completeness=Completeness(parameters=True),
        ),
        materials=[material],
    )


def project_predicate(record: TrustRecord) -> Predicate:
    if record.claim.slsa_version == "v0.2":
        return predicate_v02(record)
    return predicate_v1(record)


async def create_predicate(
    claim: RawClaim,
    builder_id: str,
    client: GitHubClient,
    env: TrustedEnvironment,
) -> Predicate:
    record = await build_trust_record(claim, builder_id, client, env)
    predicate = project_predicate(record)
    logger.debug(
        "built %s predicate for %s", type(predicate).predicate_type, claim.github.repository
    )
    return predicate
