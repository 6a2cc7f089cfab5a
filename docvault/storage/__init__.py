"""DocVault storage — object store adapter and presigned URL resolution."""

from docvault.storage.object_store import ObjectStore, S3ObjectStore  # noqa: F401
from docvault.storage.signing import (  # noqa: F401
    EdgeFunctionSigner,
    ObjectStoreSigner,
    PresignedUrlResolver,
    PreviewRouteSigner,
    Signer,
    build_signers,
)

__all__ = [
    "ObjectStore",
    "S3ObjectStore",
    "Signer",
    "EdgeFunctionSigner",
    "PreviewRouteSigner",
    "ObjectStoreSigner",
    "PresignedUrlResolver",
    "build_signers",
]
