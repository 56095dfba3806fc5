from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from cryptography import x509
from cryptography.x509 import (
    ObjectIdentifier,
    SubjectAlternativeName,
    UniformResourceIdentifier,
)
from sigstore.errors import Error as SigstoreError
from sigstore.models import Bundle, ClientTrustConfig
from sigstore.oidc import IdentityToken, detect_credential
from sigstore.sign import SigningContext
from sigstore.verify import Verifier
from sigstore.verify.policy import OIDCIssuer

from slsa_delegator.errors import (
    InvalidURIFormat,
    MalformedClaim,
    MalformedToken,
    MissingCertificate,
    MissingExtension,
    MissingSAN,
    PathDerivationError,
    SignatureVerificationFailed,
)
from slsa_delegator.files import safe_file_sha256
from slsa_delegator.models import (
    TOKEN_CONTEXT,
    TOKEN_VERSION,
    BuilderInfo,
    CertificateIdentity,
    GitHubContext,
    ImageInfo,
    RawClaim,
    RunnerInfo,
    ToolInfo,
    TrustedEnvironment,
)

logger = logging.getLogger(__name__)

GITHUB_URL = "https://github.com/"
GITHUB_ACTIONS_ISSUER = "https://token.actions.githubusercontent.com"
# Fulcio build signer digest, DER UTF8String since v2 of the extensions.
BUILD_SIGNER_DIGEST_OID = ObjectIdentifier("1.3.6.1.4.1.57264.1.10")
# Deprecated GitHub workflow sha extension, raw string value.
LEGACY_WORKFLOW_SHA_OID = ObjectIdentifier("1.3.6.1.4.1.57264.1.3")
SHA1_BYTE_LENGTH = 20


@dataclass(frozen=True)
class SignedToken:
    bundle: Dict[str, Any]
    bundle_bytes: bytes
    signed_payload: bytes
    claim_bytes: bytes
    claim: RawClaim


def _token_segments(token: str) -> List[str]:
    parts = token.strip().split(".")
    if len(parts) != 2:
        raise MalformedToken(f"malformed token: {len(parts)} segments, expected 2")
    return parts


def _b64decode(segment: str, what: str) -> bytes:
    try:
        return base64.b64decode(segment, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedToken(f"malformed token: {what} segment is not valid base64") from exc


def split_token(token: str) -> Tuple[bytes, bytes]:
    bundle_segment, payload_segment = _token_segments(token)
    return _b64decode(bundle_segment, "bundle"), _b64decode(payload_segment, "payload")


def encode_token(bundle: bytes, payload: bytes) -> str:
    return (
        base64.b64encode(bundle).decode("ascii") + "." + base64.b64encode(payload).decode("ascii")
    )


def parse_claim(payload: bytes) -> RawClaim:
    try:
        raw = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedClaim(f"claim payload is not valid UTF-8 JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise MalformedClaim("claim payload is not a JSON object")
    try:
        return RawClaim.model_validate(raw)
    except ValueError as exc:
        raise MalformedClaim(str(exc)) from exc


def decode_token(token: str) -> SignedToken:
    _, payload_segment = _token_segments(token)
    bundle_bytes, claim_bytes = split_token(token)
    try:
        bundle = json.loads(bundle_bytes.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedToken(f"malformed token: bundle is not valid JSON: {exc}") from exc
    if not isinstance(bundle, dict):
        raise MalformedToken("malformed token: bundle is not a JSON object")
    claim = parse_claim(claim_bytes)
    logger.debug("decoded token for %s run %s", claim.github.repository, claim.github.run_id)
    return SignedToken(
        bundle=bundle,
        bundle_bytes=bundle_bytes,
        signed_payload=payload_segment.encode("ascii"),
        claim_bytes=claim_bytes,
        claim=claim,
    )


def certificate_chain(bundle: Mapping[str, Any]) -> List[x509.Certificate]:
    material = bundle.get("verificationMaterial")
    if not isinstance(material, dict):
        raise MissingCertificate("undefined bundle.verificationMaterial")

    raw_certs: List[Any] = []
    chain = material.get("x509CertificateChain")
    if isinstance(chain, dict):
        raw_certs.extend(entry.get("rawBytes") for entry in chain.get("certificates") or [])
    single = material.get("certificate")
    if not raw_certs and isinstance(single, dict):
        raw_certs.append(single.get("rawBytes"))
    if not raw_certs:
        raise MissingCertificate("bundle.verificationMaterial has no certificates")

    certs: List[x509.Certificate] = []
    for raw in raw_certs:
        if not isinstance(raw, str) or not raw:
            raise MissingCertificate("certificate entry without rawBytes")
        try:
            certs.append(x509.load_der_x509_certificate(base64.b64decode(raw)))
        except (binascii.Error, ValueError) as exc:
            raise MissingCertificate(f"invalid certificate in bundle: {exc}") from exc
    return certs


def _san_uri(cert: x509.Certificate) -> str:
    try:
        sans = cert.extensions.get_extension_for_class(SubjectAlternativeName).value
    except x509.ExtensionNotFound as exc:
        raise MissingSAN("cannot find subjectAltName in certificate") from exc
    uris = sans.get_values_for_type(UniformResourceIdentifier)
    if not uris:
        raise MissingSAN("cannot find URI in subjectAltName")
    return uris[0]


def parse_identity_uri(uri: str) -> Tuple[str, str]:
    # https://github.com/<owner>/<repo>/.github/workflows/tool.yml@refs/heads/main
    url, sep, ref = uri.rpartition("@")
    if not sep:
        raise InvalidURIFormat(f"invalid URI, no ref: {uri}")
    if not url.startswith(GITHUB_URL):
        raise InvalidURIFormat(f"not a GitHub URI: {uri}")
    segments = url[len(GITHUB_URL) :].split("/")
    if len(segments) < 2 or not segments[0] or not segments[1]:
        raise InvalidURIFormat(f"invalid URI, no repository: {uri}")
    return f"{segments[0]}/{segments[1]}", ref


def _remove_prefix(value: str, prefix: str) -> str:
    if not value.startswith(prefix):
        raise PathDerivationError(f"no prefix '{prefix}' in '{value}'")
    return value[len(prefix) :]


def _remove_suffix(value: str, suffix: str) -> str:
    if not value.endswith(suffix):
        raise PathDerivationError(f"no suffix '{suffix}' in '{value}'")
    return value[: -len(suffix)]


def _der_utf8_string(raw: bytes) -> Optional[str]:
    """Decode a single DER UTF8String (tag 0x0C), or return None for anything else."""
    if raw[:1] != b"\x0c" or len(raw) < 2:
        return None
    header, size = 2, raw[1]
    if size > 0x7F:
        # Long form: the low bits count the length octets that follow.
        header += size - 0x80
        if header == 2 or len(raw) < header:
            return None
        size = int.from_bytes(raw[2:header], "big")
    body = raw[header : header + size]
    if len(body) != size:
        return None
    try:
        return body.decode("utf-8")
    except UnicodeDecodeError:
        return None


def extension_hex(cert: x509.Certificate, oid: ObjectIdentifier, byte_length: int) -> bytes:
    """Return the hex digest stored in a custom extension.

    The value may be a DER string or plain text with leading noise; only the
    trailing ``2 * byte_length`` hex characters are kept.
    """
    try:
        ext = cert.extensions.get_extension_for_oid(oid)
    except x509.ExtensionNotFound as exc:
        raise MissingExtension(f"cannot find oid '{oid.dotted_string}' in certificate") from exc
    raw = getattr(ext.value, "value", b"")
    text = _der_utf8_string(raw)
    if text is None:
        text = raw.decode("utf-8", errors="replace")
    tail = text.strip()[-(byte_length * 2) :]
    try:
        digest = bytes.fromhex(tail)
    except ValueError as exc:
        raise MissingExtension(f"no hex digest in oid '{oid.dotted_string}'") from exc
    if len(digest) != byte_length:
        raise MissingExtension(f"no hex digest in oid '{oid.dotted_string}'")
    return digest


def certificate_commit_sha(cert: x509.Certificate) -> str:
    try:
        return extension_hex(cert, BUILD_SIGNER_DIGEST_OID, SHA1_BYTE_LENGTH).hex()
    except MissingExtension:
        logger.debug("falling back to legacy workflow sha extension")
    return extension_hex(cert, LEGACY_WORKFLOW_SHA_OID, SHA1_BYTE_LENGTH).hex()


def extract_identity(chain: Sequence[x509.Certificate]) -> CertificateIdentity:
    if not chain:
        raise MissingCertificate("certificate chain is empty")
    # The first certificate is the client certificate.
    leaf = chain[0]
    uri = _san_uri(leaf)
    repository, ref = parse_identity_uri(uri)
    commit_sha = certificate_commit_sha(leaf)
    path = _remove_suffix(_remove_prefix(uri, f"{GITHUB_URL}{repository}/"), f"@{ref}")
    logger.debug("tool identity: uri=%s repository=%s ref=%s", uri, repository, ref)
    return CertificateIdentity(
        uri=uri,
        repository=repository,
        ref=ref,
        commit_sha=commit_sha,
        path=path,
    )


def verify_token_signature(token: SignedToken, *, staging: bool, offline: bool) -> None:
    try:
        bundle = Bundle.from_json(token.bundle_bytes)
        verifier = (
            Verifier.staging(offline=offline) if staging else Verifier.production(offline=offline)
        )
        verifier.verify_artifact(token.signed_payload, bundle, OIDCIssuer(GITHUB_ACTIONS_ISSUER))
    except SigstoreError as exc:
        raise SignatureVerificationFailed(f"token signature verification failed: {exc}") from exc
    logger.debug("token signature verified")


def load_identity_token(*, identity_token: Optional[str], identity_token_env: str) -> IdentityToken:
    token = identity_token or os.getenv(identity_token_env)
    if token:
        return IdentityToken(token)
    detected = detect_credential()
    if not detected:
        raise ValueError(
            f"missing OIDC token: pass --identity-token, set {identity_token_env}, "
            "or run with id-token: write permissions"
        )
    return IdentityToken(detected)


def build_claim(
    env: TrustedEnvironment,
    *,
    audience: str,
    runner_label: str,
    build_action_path: str,
    inputs: Mapping[str, Any],
    masked_inputs: Sequence[str],
    slsa_version: str,
    private_repository: bool = False,
) -> RawClaim:
    digest = safe_file_sha256(env.event_path, env) if env.event_path else ""
    return RawClaim(
        version=TOKEN_VERSION,
        slsa_version=slsa_version,
        context=TOKEN_CONTEXT,
        builder=BuilderInfo(
            audience=audience,
            runner_label=runner_label,
            private_repository=private_repository,
        ),
        github=GitHubContext(
            actor_id=env.actor_id,
            event_name=env.event_name,
            event_payload_sha256=digest,
            ref=env.ref,
            ref_type=env.ref_type,
            repository=env.repository,
            repository_id=env.repository_id,
            repository_owner_id=env.repository_owner_id,
            run_attempt=env.run_attempt,
            run_id=env.run_id,
            run_number=env.run_number,
            sha=env.sha,
            workflow_ref=env.workflow_ref,
            workflow_sha=env.workflow_sha,
        ),
        runner=RunnerInfo(arch=env.runner_arch, name=env.runner_name, os=env.runner_os),
        image=ImageInfo(os=env.image_os, version=env.image_version),
        tool=ToolInfo.model_validate(
            {
                "actions": {"build_artifacts": {"path": build_action_path}},
                "inputs": dict(inputs),
                "masked_inputs": list(masked_inputs),
            }
        ),
    )


def sign_claim(
    claim: RawClaim,
    *,
    identity_token: IdentityToken,
    staging: bool,
    offline: bool,
) -> str:
    payload = json.dumps(claim.to_json_dict(), separators=(",", ":")).encode("utf-8")
    trust_config = (
        ClientTrustConfig.staging(offline=offline)
        if staging
        else ClientTrustConfig.production(offline=offline)
    )
    ctx = SigningContext.from_trust_config(trust_config)
    # The verifier checks the signature over the base64 segment, not the raw JSON.
    signed_payload = base64.b64encode(payload)
    with ctx.signer(identity_token, cache=True) as signer:
        bundle = signer.sign_artifact(signed_payload)
    logger.debug("signed claim for %s as %s", claim.github.repository, identity_token.identity)
    return encode_token(bundle.to_json().encode("utf-8"), payload)
