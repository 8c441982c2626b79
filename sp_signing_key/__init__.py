"""Custom signing key payload builder and Graph uploader for Entra ID service principals."""
from .certificate import CertificateMaterial, load_certificate_material
from .errors import (
    CertificateLoadError,
    ConfigError,
    EncodingError,
    SigningKeyError,
    TokenAcquisitionError,
    UploadError,
    ValidityWindowError,
)
from .graph_client import GraphClient, GraphConfig
from .payload import SigningKeyPayload, build_payload, custom_key_identifier
from .uploader import KeyCredentialUploader

__version__ = "0.1.0"

__all__ = [
    "CertificateLoadError",
    "CertificateMaterial",
    "ConfigError",
    "EncodingError",
    "GraphClient",
    "GraphConfig",
    "KeyCredentialUploader",
    "SigningKeyError",
    "SigningKeyPayload",
    "TokenAcquisitionError",
    "UploadError",
    "ValidityWindowError",
    "build_payload",
    "custom_key_identifier",
    "load_certificate_material",
]
