"""
Types shared by the object stores and the storage reconciler
"""

from dataclasses import dataclass
from typing import Optional


class ObjectStoreError(Exception):
    """A store call failed (network, credentials, timeout, disabled store)"""


class ObjectNotFound(ObjectStoreError):
    """The requested object does not exist"""


class DocumentKind:
    ORIGINAL = "original"
    SIGNED = "assinado"

    ALL = (ORIGINAL, SIGNED)


class Backend:
    PRIMARY = "s3"
    LEGACY = "uploadcare"


@dataclass
class StoredObject:
    """Where a document ended up. `key` is only set for the primary store; `url` is
    None when the primary store kept the object but could not presign a link."""
    url: Optional[str]
    key: Optional[str]
    backend: str

    @property
    def is_primary(self) -> bool:
        return self.backend == Backend.PRIMARY
