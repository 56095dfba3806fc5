import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from slsa_delegator import __version__
from slsa_delegator.detect import (
    TRUSTED_TOOLING_REPOSITORY,
    ensure_github_hosted_runners,
    resolve_workflow_identity,
)
from slsa_delegator.errors import error_kind
from slsa_delegator.files import write_json_once, write_once
from slsa_delegator.github import DEFAULT_TIMEOUT, GitHubClient, OIDCTokenRequester, privacy_check
from slsa_delegator.inputs import fetch_tool_workflow, with_filtered_inputs
from slsa_delegator.models import CertificateIdentity, RawClaim, TrustedEnvironment
from slsa_delegator.predicate import Predicate, create_predicate
from slsa_delegator.token import (
    build_claim,
    certificate_chain,
    decode_token,
    extract_identity,
    load_identity_token,
    sign_claim,
    verify_token_signature,
)
from slsa_delegator.validate import DEFAULT_RUNNER_LABELS, mask_inputs, validate_claim

app = typer.Typer(
    name="slsa-delegator", help="SLSA delegator token verification and provenance CLI"
)
console = Console()
logger = logging.getLogger("slsa_delegator")


def _emit(payload: Dict[str, Any], as_json: bool) -> None:
    if as_json:
        typer.echo(json.dumps(payload, sort_keys=True))
        return
    console.print_json(data=payload)


def _fail(command: str, error: Exception, as_json: bool) -> None:
    logger.debug("%s failed", command, exc_info=error)
    _emit(
        {"ok": False, "error": str(error), "kind": error_kind(error), "command": command},
        as_json,
    )
    raise typer.Exit(code=1)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _parse_csv_values(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [s.strip() for s in raw.split(",") if s.strip()]


def _parse_inputs(raw: str) -> Dict[str, Any]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"inputs must be a JSON object: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("inputs must be a JSON object")
    return payload


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output to stderr"),
):
    """Create and verify SLSA delegator tokens inside GitHub Actions."""
    _configure_logging(verbose)


async def _verified_predicate(
    claim: RawClaim,
    identity: CertificateIdentity,
    env: TrustedEnvironment,
    *,
    github_token: str,
    timeout: float,
    filter_inputs: bool,
) -> Predicate:
    async with GitHubClient(github_token, timeout=timeout) as client:
        if filter_inputs:
            workflow = await fetch_tool_workflow(
                client, identity.repository, identity.commit_sha, identity.path
            )
            claim = with_filtered_inputs(claim, workflow)
        return await create_predicate(claim, identity.uri, client, env)


@app.command("verify-token")
def verify_token(
    output: str = typer.Option(..., help="Output path for the provenance predicate JSON"),
    recipient: str = typer.Option(
        ..., envvar="SLSA_WORKFLOW_RECIPIENT", help="Expected builder.audience of the token"
    ),
    token: str = typer.Option(
        ..., envvar="SLSA_UNVERIFIED_TOKEN", help="Signed token: base64(bundle).base64(claim)"
    ),
    github_token: str = typer.Option(
        "", envvar="GITHUB_TOKEN", help="Token for the GitHub REST API"
    ),
    runner_labels: str = typer.Option(
        ",".join(DEFAULT_RUNNER_LABELS), help="Comma-separated allowed runner labels"
    ),
    filter_inputs: bool = typer.Option(
        False, help="Drop tool inputs not declared by the tool's reusable workflow"
    ),
    timeout: float = typer.Option(DEFAULT_TIMEOUT, help="GitHub API timeout in seconds"),
    staging: bool = typer.Option(False, help="Use Sigstore staging instance"),
    offline: bool = typer.Option(False, help="Use cached trust root only"),
    json_output: bool = typer.Option(False, "--json", help="Deterministic JSON output"),
):
    """Verify a delegator token and write the provenance predicate it describes."""
    try:
        env = TrustedEnvironment.from_environ()
        signed = decode_token(token)
        verify_token_signature(signed, staging=staging, offline=offline)
        identity = extract_identity(certificate_chain(signed.bundle))
        validate_claim(
            signed.claim,
            env,
            recipient=recipient,
            runner_labels=_parse_csv_values(runner_labels),
        )
        predicate = asyncio.run(
            _verified_predicate(
                signed.claim,
                identity,
                env,
                github_token=github_token,
                timeout=timeout,
                filter_inputs=filter_inputs,
            )
        )
        out = write_json_once(output, predicate.to_json_dict(), env)
        _emit(
            {
                "ok": True,
                "tool_repository": identity.repository,
                "tool_ref": identity.ref,
                "tool_uri": identity.uri,
                "predicate_type": predicate.predicate_type,
                "predicate": str(out),
                # Unmasked: the wrapper action passes these inputs to the tool.
                "verified_token": signed.claim_bytes.decode("utf-8"),
            },
            json_output,
        )
    except Exception as e:
        _fail("verify-token", e, json_output)


@app.command("setup-token")
def setup_token(
    recipient: str = typer.Option(
        ..., envvar="SLSA_WORKFLOW_RECIPIENT", help="Workflow the token is addressed to"
    ),
    build_action_path: str = typer.Option(..., help="Path of the tool's build Action"),
    inputs: str = typer.Option("{}", help="Tool inputs as a JSON object"),
    masked_inputs: Optional[str] = typer.Option(
        None, help="Comma-separated input names to mask in the provenance"
    ),
    runner_label: str = typer.Option(DEFAULT_RUNNER_LABELS[0], help="Runner label for the build"),
    slsa_version: str = typer.Option("v1.0", help="Provenance version: v0.2|v1-rc1|v1.0"),
    private_repository: bool = typer.Option(
        False, help="Allow a private repository name in the public transparency log"
    ),
    output: Optional[str] = typer.Option(None, help="Optional output path for the token"),
    identity_token: Optional[str] = typer.Option(None, help="OIDC token for keyless signing"),
    identity_token_env: str = typer.Option(
        "SIGSTORE_ID_TOKEN", help="Environment variable containing OIDC token"
    ),
    staging: bool = typer.Option(False, help="Use Sigstore staging instance"),
    offline: bool = typer.Option(False, help="Use cached trust root only"),
    json_output: bool = typer.Option(False, "--json", help="Deterministic JSON output"),
):
    """Build and sign a delegator token for the current workflow run."""
    try:
        env = TrustedEnvironment.from_environ()
        tool_inputs = _parse_inputs(inputs)
        masked = _parse_csv_values(masked_inputs)
        # Fail before signing if a masked name is unknown.
        mask_inputs(tool_inputs, masked)
        claim = build_claim(
            env,
            audience=recipient,
            runner_label=runner_label,
            build_action_path=build_action_path,
            inputs=tool_inputs,
            masked_inputs=masked,
            slsa_version=slsa_version,
            private_repository=private_repository,
        )
        token = sign_claim(
            claim,
            identity_token=load_identity_token(
                identity_token=identity_token, identity_token_env=identity_token_env
            ),
            staging=staging,
            offline=offline,
        )
        result: Dict[str, Any] = {"ok": True, "token": token}
        if output:
            result["path"] = str(write_once(output, token.encode("ascii"), env))
        _emit(result, json_output)
    except Exception as e:
        _fail("setup-token", e, json_output)


@app.command("detect-workflow")
def detect_workflow(
    github_token: str = typer.Option(
        "", envvar="GITHUB_TOKEN", help="Token for the GitHub REST API"
    ),
    trusted_repository: str = typer.Option(
        TRUSTED_TOOLING_REPOSITORY, help="Repository hosting the trusted reusable workflows"
    ),
    timeout: float = typer.Option(DEFAULT_TIMEOUT, help="GitHub API timeout in seconds"),
    json_output: bool = typer.Option(False, "--json", help="Deterministic JSON output"),
):
    """Detect the reusable workflow repository, ref and path of this run."""

    async def _detect(env: TrustedEnvironment):
        requester = (
            OIDCTokenRequester.from_environment(env, timeout=timeout)
            if env.oidc_available
            else None
        )
        async with GitHubClient(github_token, timeout=timeout) as client:
            return await resolve_workflow_identity(
                env, client, requester, trusted_repository=trusted_repository
            )

    try:
        identity = asyncio.run(_detect(TrustedEnvironment.from_environ()))
        _emit(
            {
                "ok": True,
                "repository": identity.repository,
                "ref": identity.ref,
                "workflow": identity.workflow,
            },
            json_output,
        )
    except Exception as e:
        _fail("detect-workflow", e, json_output)


@app.command("ensure-hosted-runners")
def ensure_hosted_runners(
    github_token: str = typer.Option(
        "", envvar="GITHUB_TOKEN", help="Token for the GitHub REST API"
    ),
    timeout: float = typer.Option(DEFAULT_TIMEOUT, help="GitHub API timeout in seconds"),
    json_output: bool = typer.Option(False, "--json", help="Deterministic JSON output"),
):
    """Fail when any job of this run used a self-hosted runner label."""

    async def _check(env: TrustedEnvironment) -> None:
        async with GitHubClient(github_token, timeout=timeout) as client:
            await ensure_github_hosted_runners(client, env.repository, env.run_id)

    try:
        env = TrustedEnvironment.from_environ()
        asyncio.run(_check(env))
        _emit({"ok": True, "repository": env.repository, "run_id": env.run_id}, json_output)
    except Exception as e:
        _fail("ensure-hosted-runners", e, json_output)


@app.command("privacy-check")
def privacy_check_command(
    repository: Optional[str] = typer.Option(
        None, help="Repository to check (defaults to GITHUB_REPOSITORY)"
    ),
    override: bool = typer.Option(
        False, help="Accept a private repository name in public transparency logs"
    ),
    github_token: str = typer.Option(
        "", envvar="GITHUB_TOKEN", help="Token for the GitHub REST API"
    ),
    timeout: float = typer.Option(DEFAULT_TIMEOUT, help="GitHub API timeout in seconds"),
    json_output: bool = typer.Option(False, "--json", help="Deterministic JSON output"),
):
    """Refuse to continue for private repositories unless overridden."""

    async def _check(name: str):
        async with GitHubClient(github_token, timeout=timeout) as client:
            return await privacy_check(client, name, override=override)

    try:
        name = repository or TrustedEnvironment.from_environ().repository
        if not name:
            raise ValueError("no repository given and GITHUB_REPOSITORY is unset")
        is_private, passes = asyncio.run(_check(name))
        if not passes:
            raise ValueError(
                f"repository {name} is private; its name would be exposed in the public "
                "transparency log. Pass --override to continue"
            )
        _emit({"ok": True, "repository": name, "is_private": is_private}, json_output)
    except Exception as e:
        _fail("privacy-check", e, json_output)


@app.command()
def version(
    json_output: bool = typer.Option(False, "--json", help="Deterministic JSON output"),
):
    """Print version information."""
    _emit({"ok": True, "version": __version__}, json_output)


if __name__ == "__main__":
    app()
