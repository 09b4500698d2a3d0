# menugen/services/ingestion.py
import logging
from dataclasses import dataclass
from typing import Optional

from menugen.core.errors import DuplicateFingerprintError, PersistenceError, UploadValidationError
from menugen.core.store import MenuStore
from menugen.core.tasks import BackgroundSupervisor
from menugen.services.image_processor import compute_fingerprint, validate_image_file
from menugen.services.pipeline import MenuPipeline

logger = logging.getLogger(__name__)


@dataclass
class IngestionResult:
    menu_id: str
    status: str
    created: bool


class IngestionGate:
    """Validates uploads, deduplicates them by content and starts new pipelines"""

    def __init__(
        self,
        store: MenuStore,
        supervisor: BackgroundSupervisor,
        pipeline: MenuPipeline,
        max_upload_bytes: int = 8 * 1024 * 1024,
    ):
        self.store = store
        self.supervisor = supervisor
        self.pipeline = pipeline
        self.max_upload_bytes = max_upload_bytes

    def validate(self, image_bytes: bytes, content_type: Optional[str], size: Optional[int] = None) -> None:
        if not content_type or not content_type.startswith("image/"):
            raise UploadValidationError("File must be an image")

        size = len(image_bytes) if size is None else size
        if size == 0 or not image_bytes:
            raise UploadValidationError("Uploaded file is empty")
        if size > self.max_upload_bytes or len(image_bytes) > self.max_upload_bytes:
            limit_mb = self.max_upload_bytes / (1024 * 1024)
            raise UploadValidationError(f"File size exceeds {limit_mb:g}MB limit")

        if not validate_image_file(image_bytes):
            raise UploadValidationError(
                "Invalid image file. Please upload a valid image format (JPEG, PNG, GIF, etc.)."
            )

    async def ingest(
        self,
        image_bytes: bytes,
        content_type: Optional[str],
        size: Optional[int] = None,
        filename: Optional[str] = None,
    ) -> IngestionResult:
        """Return the menu for these bytes, creating it and starting its pipeline if new"""
        self.validate(image_bytes, content_type, size)
        image_hash = compute_fingerprint(image_bytes)

        existing = await self.store.find_menu_by_hash(image_hash)
        if existing:
            logger.info(f"Upload matches existing menu {existing['id']} ({existing['status']})")
            return IngestionResult(existing["id"], existing["status"], created=False)

        try:
            menu = await self.store.create_menu(image_hash, filename)
        except DuplicateFingerprintError:
            # A concurrent upload of the same bytes committed first; report its menu
            winner = await self.store.find_menu_by_hash(image_hash)
            if winner is None:
                raise PersistenceError("Menu vanished after a duplicate fingerprint conflict")
            logger.info(f"Lost create race for image {image_hash[:12]}, returning menu {winner['id']}")
            return IngestionResult(winner["id"], winner["status"], created=False)

        logger.info(f"Created menu {menu['id']} for upload {filename or '<unnamed>'}")
        self.supervisor.spawn(menu["id"], self.pipeline.run(menu["id"], image_bytes))
        return IngestionResult(menu["id"], menu["status"], created=True)
