import asyncio
import io
import json

import pytest
from PIL import Image

from menugen.container import assemble
from menugen.core.config import Settings
from menugen.core.errors import DescriptionGenerationError, ImageGenerationError
from menugen.core.memory_store import InMemoryMenuStore
from menugen.services.image_service import GeneratedImage
from menugen.services.openai_service import parse_menu_structure
from menugen.services.progress_tracker import ProgressTracker


def make_image_bytes(color=(200, 30, 30), size=(64, 48), fmt="PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


def menu_json(*sections) -> str:
    """menu_json(("Starters", [("Soup", "$5")]), ...) -> model-style JSON output"""
    return json.dumps({
        "sections": [
            {"name": name, "dishes": [{"name": d, "price": p} for d, p in dishes]}
            for name, dishes in sections
        ]
    })


TWO_SECTION_MENU = menu_json(
    ("Starters", [("Tomato Soup", "$6.00"), ("Garlic Bread", "$4.50")]),
    ("Mains", [("Ribeye Steak", "$32.00"), ("Catch of the Day", "Market Price"), ("Mushroom Risotto", "$12.50")]),
)


class FakeExtractor:
    """Runs canned model output through the real parser"""

    def __init__(self, content=TWO_SECTION_MENU, error=None):
        self.content = content
        self.error = error
        self.calls = 0

    async def extract(self, image_bytes):
        self.calls += 1
        await asyncio.sleep(0)
        if self.error:
            raise self.error
        return parse_menu_structure(self.content)


class FakeDescriptions:
    def __init__(self, fail_for=(), delay=0.0, hang_for=()):
        self.fail_for = set(fail_for)
        self.hang_for = set(hang_for)
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.on_call = None

    async def generate(self, dish_name):
        self.calls.append(dish_name)
        if self.on_call:
            await self.on_call(dish_name)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if dish_name in self.hang_for:
                await asyncio.Event().wait()
            if dish_name in self.fail_for:
                raise DescriptionGenerationError(f"Text service rejected '{dish_name}'")
            return f"A lovely plate of {dish_name.lower()}."
        finally:
            self.in_flight -= 1


class FakeImages:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.calls = []

    async def generate(self, dish_name):
        self.calls.append(dish_name)
        await asyncio.sleep(0)
        if dish_name in self.fail_for:
            raise ImageGenerationError("Image generation timed out after 60s")
        return GeneratedImage(url=f"https://images.test/{dish_name.replace(' ', '-').lower()}.webp", source="fake")


@pytest.fixture
def settings():
    return Settings(
        store_backend="memory",
        openai_api_key="test",
        enrichment_concurrency=3,
        pipeline_timeout=5.0,
        max_upload_bytes=1024 * 1024,
    )


@pytest.fixture
def store():
    return InMemoryMenuStore()


@pytest.fixture
def build(settings, store):
    """Wire a container around fakes: build(extractor=..., descriptions=..., images=...)"""

    def _build(extractor=None, descriptions=None, images=None, **overrides):
        for key, value in overrides.items():
            setattr(settings, key, value)
        return assemble(
            settings,
            store,
            extractor=extractor or FakeExtractor(),
            descriptions=descriptions or FakeDescriptions(),
            images=images or FakeImages(),
            tracker=ProgressTracker(store, cleanup_delay=0),
        )

    return _build


@pytest.fixture
def image_bytes():
    return make_image_bytes()
