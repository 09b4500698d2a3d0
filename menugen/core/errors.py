# menugen/core/errors.py
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION"
    STRUCTURE_VALIDATION = "STRUCTURE_VALIDATION"
    EXTRACTION = "EXTRACTION"
    PERSISTENCE = "PERSISTENCE"
    ENRICHMENT_DESCRIPTION = "ENRICHMENT_DESCRIPTION"
    ENRICHMENT_IMAGE = "ENRICHMENT_IMAGE"
    NOT_FOUND = "NOT_FOUND"
    PIPELINE_TIMEOUT = "PIPELINE_TIMEOUT"
    CANCELLED = "CANCELLED"
    INTERNAL = "INTERNAL"


class MenuGenError(Exception):
    """Base error carrying a failure kind and a human-readable message"""

    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    def to_dict(self):
        return {"code": self.kind.value, "message": self.message}


class UploadValidationError(MenuGenError):
    kind = ErrorKind.VALIDATION


class StructureValidationError(MenuGenError):
    kind = ErrorKind.STRUCTURE_VALIDATION


class ExtractionError(MenuGenError):
    kind = ErrorKind.EXTRACTION


class PersistenceError(MenuGenError):
    kind = ErrorKind.PERSISTENCE


class DescriptionGenerationError(MenuGenError):
    kind = ErrorKind.ENRICHMENT_DESCRIPTION


class ImageGenerationError(MenuGenError):
    kind = ErrorKind.ENRICHMENT_IMAGE


class MenuNotFoundError(MenuGenError):
    kind = ErrorKind.NOT_FOUND


class DuplicateFingerprintError(MenuGenError):
    """Raised by a store when the unique image_hash constraint rejects an insert"""

    kind = ErrorKind.PERSISTENCE


class TransientServiceError(MenuGenError):
    """A retryable failure talking to an external service"""

    kind = ErrorKind.INTERNAL
