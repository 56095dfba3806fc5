from __future__ import annotations

from typing import Any, Optional


class DelegatorError(ValueError):
    kind = "DelegatorError"


class MalformedToken(DelegatorError):
    kind = "MalformedToken"


class MalformedClaim(DelegatorError):
    kind = "MalformedClaim"


class MissingCertificate(DelegatorError):
    kind = "MissingCertificate"


class MissingSAN(DelegatorError):
    kind = "MissingSAN"


class InvalidURIFormat(DelegatorError):
    kind = "InvalidURIFormat"


class MissingExtension(DelegatorError):
    kind = "MissingExtension"


class PathDerivationError(DelegatorError):
    kind = "PathDerivationError"


class FieldMismatch(DelegatorError):
    kind = "FieldMismatch"

    def __init__(self, name: str, actual: Any, expected: Any, message: Optional[str] = None):
        self.name = name
        self.actual = actual
        self.expected = expected
        super().__init__(message or f"mismatch {name}: got '{actual}', expected '{expected}'")


class FieldNotAllowed(DelegatorError):
    kind = "FieldNotAllowed"

    def __init__(self, name: str, actual: Any, candidates: list):
        self.name = name
        self.actual = actual
        self.candidates = list(candidates)
        allowed = ",".join(str(c) for c in self.candidates)
        super().__init__(f"mismatch {name}: got '{actual}', expected one of '{allowed}'")


class EmptyField(DelegatorError):
    kind = "EmptyField"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"empty {name}, expected non-empty value")


class UnknownMaskedInput(DelegatorError):
    kind = "UnknownMaskedInput"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"input '{name}' does not exist in the input map")


class InvalidDigest(DelegatorError):
    kind = "InvalidDigest"


class AudienceMismatch(DelegatorError):
    kind = "AudienceMismatch"


class MissingWorkflowRef(DelegatorError):
    kind = "MissingWorkflowRef"


class AmbiguousWorkflowReference(DelegatorError):
    kind = "AmbiguousWorkflowReference"


class NoReusableWorkflow(DelegatorError):
    kind = "NoReusableWorkflow"


class SelfHostedRunnerDetected(DelegatorError):
    kind = "SelfHostedRunnerDetected"

    def __init__(self, labels: list):
        self.labels = sorted(labels)
        super().__init__(
            "self-hosted runners are not allowed in SLSA Level 3 workflows. "
            f"labels: {','.join(self.labels)}"
        )


class MalformedWorkflow(DelegatorError):
    kind = "MalformedWorkflow"


class UnsafePath(DelegatorError):
    kind = "UnsafePath"


class SignatureVerificationFailed(DelegatorError):
    kind = "SignatureVerificationFailed"


class GitHubAPIError(DelegatorError):
    kind = "GitHubAPIError"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def error_kind(exc: BaseException) -> str:
    return getattr(exc, "kind", type(exc).__name__)
