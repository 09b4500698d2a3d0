# menugen/container.py
import logging
from dataclasses import dataclass
from functools import partial
from typing import Optional

from openai import AsyncOpenAI

from menugen.core.async_supabase import AsyncSupabaseClient
from menugen.core.config import Settings
from menugen.core.memory_store import InMemoryMenuStore
from menugen.core.store import MenuStore
from menugen.core.supabase_client import close_connections, get_http_client, get_supabase_client
from menugen.core.supabase_store import SupabaseMenuStore
from menugen.core.tasks import BackgroundSupervisor
from menugen.services.enrichment import EnrichmentScheduler
from menugen.services.image_service import (
    DalleImageProvider,
    GeneratedImageStore,
    ImageGenerator,
    ReplicateImageProvider,
)
from menugen.services.ingestion import IngestionGate
from menugen.services.openai_service import DescriptionGenerator, StructureExtractor
from menugen.services.persistence import PersistenceMapper
from menugen.services.pipeline import MenuPipeline
from menugen.services.progress_tracker import ProgressTracker

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Everything the API needs, wired once per process and passed explicitly"""

    settings: Settings
    store: MenuStore
    supervisor: BackgroundSupervisor
    tracker: ProgressTracker
    pipeline: MenuPipeline
    ingestion: IngestionGate

    async def close(self):
        await self.supervisor.shutdown()
        await self.tracker.close()


def assemble(
    settings: Settings,
    store: MenuStore,
    extractor,
    descriptions,
    images,
    tracker: Optional[ProgressTracker] = None,
) -> ServiceContainer:
    """Wire the pipeline around the given store and external-service collaborators"""
    tracker = tracker or ProgressTracker(store)
    supervisor = BackgroundSupervisor()
    scheduler = EnrichmentScheduler(descriptions, images, tracker, concurrency=settings.enrichment_concurrency)
    pipeline = MenuPipeline(
        store,
        extractor,
        PersistenceMapper(store, default_currency=settings.base_currency),
        scheduler,
        tracker,
        timeout=settings.pipeline_timeout,
    )
    ingestion = IngestionGate(store, supervisor, pipeline, max_upload_bytes=settings.max_upload_bytes)
    return ServiceContainer(settings, store, supervisor, tracker, pipeline, ingestion)


def build_container(settings: Settings) -> ServiceContainer:
    """Production wiring from settings"""
    retry = {"max_retries": settings.service_max_retries, "retry_delay": settings.service_retry_delay}
    openai_client = AsyncOpenAI(api_key=settings.openai_api_key)

    db = None
    if settings.store_backend == "memory":
        logger.warning("Using in-memory store; menus will not survive a restart")
        store: MenuStore = InMemoryMenuStore()
    else:
        db = AsyncSupabaseClient(partial(get_supabase_client, settings))
        store = SupabaseMenuStore(db)

    if settings.image_provider == "dalle":
        provider = DalleImageProvider(openai_client, **retry)
    else:
        provider = ReplicateImageProvider(
            get_http_client(),
            settings.replicate_api_key,
            settings.replicate_model_url,
            poll_max_attempts=settings.image_poll_max_attempts,
            poll_base_delay=settings.image_poll_base_delay,
            poll_timeout=settings.image_poll_timeout,
            **retry,
        )

    storage = None
    if settings.persist_generated_images and db is not None:
        storage = GeneratedImageStore(db, settings.images_bucket, **retry)

    return assemble(
        settings,
        store,
        extractor=StructureExtractor(openai_client, model=settings.extraction_model, **retry),
        descriptions=DescriptionGenerator(openai_client, model=settings.description_model, **retry),
        images=ImageGenerator(provider, storage),
    )


async def shutdown_container(container: ServiceContainer):
    await container.close()
    await close_connections()
