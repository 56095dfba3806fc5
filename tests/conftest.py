import base64
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from slsa_delegator.github import GitHubClient
from slsa_delegator.models import RawClaim, TrustedEnvironment
from slsa_delegator.token import BUILD_SIGNER_DIGEST_OID, build_claim

SHA = "8cbf4d422367d8499d5980a837cb9cc8e1e67001"
TOOL_SHA = "0123456789abcdef0123456789abcdef01234567"
TOOL_URI = "https://github.com/acme/tool/.github/workflows/tool.yml@refs/tags/v1.2.3"
RECIPIENT = "delegator_generic_slsa3.yml"
EVENT = {"inputs": {"release": "v1"}, "ref": "refs/heads/main"}


@pytest.fixture
def environ(tmp_path: Path) -> Dict[str, str]:
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    runner_temp = tmp_path / "runner-temp"
    runner_temp.mkdir()
    event = tmp_path / "event.json"
    event.write_text(json.dumps(EVENT), encoding="utf-8")
    return {
        "GITHUB_ACTOR": "octocat",
        "GITHUB_ACTOR_ID": "1234",
        "GITHUB_EVENT_NAME": "workflow_dispatch",
        "GITHUB_EVENT_PATH": str(event),
        "GITHUB_REF": "refs/heads/main",
        "GITHUB_REF_TYPE": "branch",
        "GITHUB_REPOSITORY": "acme/project",
        "GITHUB_REPOSITORY_ID": "42",
        "GITHUB_REPOSITORY_OWNER": "acme",
        "GITHUB_REPOSITORY_OWNER_ID": "7",
        "GITHUB_RUN_ATTEMPT": "1",
        "GITHUB_RUN_ID": "3790385865",
        "GITHUB_RUN_NUMBER": "200",
        "GITHUB_SHA": SHA,
        "GITHUB_WORKFLOW_REF": "acme/project/.github/workflows/release.yml@refs/heads/main",
        "GITHUB_WORKFLOW_SHA": SHA,
        "GITHUB_WORKSPACE": str(workspace),
        "RUNNER_TEMP": str(runner_temp),
        "RUNNER_OS": "Linux",
        "RUNNER_ARCH": "X64",
    }


@pytest.fixture
def trusted_env(environ: Dict[str, str]) -> TrustedEnvironment:
    return TrustedEnvironment.from_environ(environ)


@pytest.fixture
def claim(trusted_env: TrustedEnvironment) -> RawClaim:
    return build_claim(
        trusted_env,
        audience=RECIPIENT,
        runner_label="ubuntu-latest",
        build_action_path="./actions/build",
        inputs={"name1": "value1", "secret": "hunter2", "count": 3},
        masked_inputs=["secret"],
        slsa_version="v1.0",
    )


def _der_utf8(value: str) -> bytes:
    raw = value.encode("utf-8")
    return bytes([0x0C, len(raw)]) + raw


def _certificate(
    uri: Optional[str] = TOOL_URI,
    *,
    extensions: Optional[Dict[x509.ObjectIdentifier, bytes]] = None,
) -> x509.Certificate:
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "sigstore-intermediate")])
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(minutes=10))
    )
    if uri is not None:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.UniformResourceIdentifier(uri)]), critical=False
        )
    if extensions is None:
        extensions = {BUILD_SIGNER_DIGEST_OID: _der_utf8(TOOL_SHA)}
    for oid, value in extensions.items():
        builder = builder.add_extension(x509.UnrecognizedExtension(oid, value), critical=False)
    return builder.sign(key, hashes.SHA256())


@pytest.fixture
def make_certificate() -> Callable[..., x509.Certificate]:
    return _certificate


@pytest.fixture
def der_utf8() -> Callable[[str], bytes]:
    return _der_utf8


def bundle_for(cert: x509.Certificate) -> Dict[str, Any]:
    der = cert.public_bytes(serialization.Encoding.DER)
    return {
        "mediaType": "application/vnd.dev.sigstore.bundle.v0.3+json",
        "verificationMaterial": {"certificate": {"rawBytes": base64.b64encode(der).decode()}},
    }


@pytest.fixture
def make_bundle() -> Callable[[x509.Certificate], Dict[str, Any]]:
    return bundle_for


def _github_transport(routes: Dict[str, Any]) -> httpx.MockTransport:
    """Serve ``routes`` (path -> JSON body, or (status, body)) and 404 for the rest."""

    def handler(request: httpx.Request) -> httpx.Response:
        route = routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"message": "Not Found"})
        if isinstance(route, tuple):
            status, body = route
            return httpx.Response(status, json=body)
        if callable(route):
            return route(request)
        return httpx.Response(200, json=route)

    return httpx.MockTransport(handler)


@pytest.fixture
def github_transport() -> Callable[[Dict[str, Any]], httpx.MockTransport]:
    return _github_transport


@pytest.fixture
def github_client() -> Callable[[Dict[str, Any]], GitHubClient]:
    def factory(routes: Dict[str, Any]) -> GitHubClient:
        return GitHubClient("test-token", transport=_github_transport(routes))

    return factory
