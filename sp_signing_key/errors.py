from __future__ import annotations

from typing import Optional


class SigningKeyError(RuntimeError):
    """Base class for every failure this tool reports to the operator."""


class CertificateLoadError(SigningKeyError):
    pass


class EncodingError(SigningKeyError):
    pass


class ValidityWindowError(SigningKeyError):
    pass


class ConfigError(SigningKeyError):
    """Graph config file or environment is incomplete."""


class TokenAcquisitionError(SigningKeyError):
    """MSAL could not reach the authority or returned no access token."""


class UploadError(SigningKeyError):
    """
    A Graph request failed.

    kind is one of: timeout, connection, http4xx, http5xx, unexpected.
    A timeout means the outcome is unknown: the service principal has to be
    re-read before anything is retried.
    """

    TIMEOUT = "timeout"
    CONNECTION = "connection"
    HTTP4XX = "http4xx"
    HTTP5XX = "http5xx"
    UNEXPECTED = "unexpected"

    def __init__(
        self,
        kind: str,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ) -> None:
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.code = code
        prefix = f"HTTP {status_code}" if status_code is not None else kind
        if code:
            prefix = f"{prefix} {code}"
        super().__init__(f"{prefix}: {message}")

    @property
    def outcome_unknown(self) -> bool:
        return self.kind == self.TIMEOUT

    @classmethod
    def for_status(cls, status_code: int, message: str, code: Optional[str] = None) -> "UploadError":
        if 400 <= status_code < 500:
            kind = cls.HTTP4XX
        elif status_code >= 500:
            kind = cls.HTTP5XX
        else:
            kind = cls.UNEXPECTED
        return cls(kind, message, status_code=status_code, code=code)
