# menugen/services/image_service.py
import asyncio
import hashlib
import mimetypes
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlparse

import aiohttp
import httpx
from openai import AsyncOpenAI
from slugify import slugify

from menugen.core.async_supabase import AsyncSupabaseClient
from menugen.core.errors import ImageGenerationError, TransientServiceError
from menugen.core.retry import call_with_retries, is_transient

logger = logging.getLogger(__name__)

# Replicate prediction states
SUCCEEDED = "succeeded"
FAILED_STATES = {"failed", "canceled"}
WAITING_STATES = {"starting", "queued", "processing"}


@dataclass
class GeneratedImage:
    url: str
    source: str


def build_image_prompt(dish_name: str) -> str:
    return (
        f"High-resolution, photorealistic image of {dish_name}, plated on a clean white plate, "
        "viewed at a 45-degree angle under natural lighting, realistic background, food magazine style"
    )


def _first_output(output: Any) -> Optional[str]:
    if isinstance(output, list):
        return output[0] if output else None
    if isinstance(output, str) and output:
        return output
    return None


class ReplicateImageProvider:
    """Flux on Replicate. Answers synchronously when it can, otherwise hands back a poll URL."""

    source = "replicate"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: str,
        model_url: str,
        poll_max_attempts: int = 10,
        poll_base_delay: float = 1.0,
        poll_timeout: float = 60.0,
        max_retries: int = 3,
        retry_delay: float = 2.0,
    ):
        self.http = http_client
        self.api_key = api_key
        self.model_url = model_url
        self.poll_max_attempts = poll_max_attempts
        self.poll_base_delay = poll_base_delay
        self.poll_timeout = poll_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _submit(self, prompt: str) -> Dict[str, Any]:
        response = await self.http.post(
            self.model_url,
            headers={**self._headers, "Prefer": "wait"},
            json={
                "input": {
                    "prompt": prompt,
                    "aspect_ratio": "1:1",
                    "num_outputs": 1,
                    "num_inference_steps": 28,
                    "guidance": 3.5,
                    "output_format": "webp",
                    "output_quality": 80,
                    "go_fast": True,
                }
            },
        )
        response.raise_for_status()
        return response.json()

    async def generate(self, prompt: str) -> GeneratedImage:
        try:
            prediction = await call_with_retries(
                lambda: self._submit(prompt),
                label="Replicate prediction",
                max_retries=self.max_retries,
                initial_delay=self.retry_delay,
            )
        except Exception as e:
            raise ImageGenerationError(f"Image request failed: {str(e)}")

        status = prediction.get("status")
        if status in FAILED_STATES:
            raise ImageGenerationError(f"Image generation {status}: {prediction.get('error')}")

        url = _first_output(prediction.get("output"))
        if url:
            return GeneratedImage(url=url, source=self.source)

        poll_url = (prediction.get("urls") or {}).get("get")
        if not poll_url:
            raise ImageGenerationError("No output or polling URL available")

        try:
            url = await asyncio.wait_for(self._poll(poll_url), timeout=self.poll_timeout)
        except asyncio.TimeoutError:
            raise ImageGenerationError(f"Image generation timed out after {self.poll_timeout:.0f}s")
        return GeneratedImage(url=url, source=self.source)

    async def _poll(self, poll_url: str) -> str:
        for attempt in range(1, self.poll_max_attempts + 1):
            await asyncio.sleep(self.poll_base_delay * attempt)

            try:
                response = await self.http.get(poll_url, headers=self._headers)
                response.raise_for_status()
                result = response.json()
            except (httpx.HTTPError, ValueError) as e:
                if isinstance(e, ValueError) or is_transient(e):
                    logger.warning(f"Poll attempt {attempt} for {poll_url} failed: {str(e)}")
                    continue
                raise ImageGenerationError(f"Polling failed: {str(e)}")

            status = result.get("status")
            if status == SUCCEEDED:
                url = _first_output(result.get("output"))
                if url:
                    return url
                raise ImageGenerationError("Image generation succeeded without output")
            if status in FAILED_STATES:
                raise ImageGenerationError(f"Image generation {status}: {result.get('error')}")
            logger.debug(f"Prediction still {status} after poll attempt {attempt}")

        raise ImageGenerationError(f"Image not ready after {self.poll_max_attempts} poll attempts")


class DalleImageProvider:
    """OpenAI image generation, always synchronous"""

    source = "dalle-3"

    def __init__(self, client: AsyncOpenAI, model: str = "dall-e-3", max_retries: int = 3, retry_delay: float = 2.0):
        self.client = client
        self.model = model
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    async def generate(self, prompt: str) -> GeneratedImage:
        try:
            response = await call_with_retries(
                lambda: self.client.images.generate(
                    model=self.model,
                    prompt=prompt,
                    size="1024x1024",
                    quality="standard",
                    n=1
                ),
                label="DALL-E generation",
                max_retries=self.max_retries,
                initial_delay=self.retry_delay,
            )
        except Exception as e:
            raise ImageGenerationError(f"Image request failed: {str(e)}")

        if not response.data or not response.data[0].url:
            raise ImageGenerationError("Image service returned no image")
        return GeneratedImage(url=response.data[0].url, source=self.source)


# Storage extensions for the content types image providers answer with
IMAGE_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
}
DEFAULT_CONTENT_TYPE = "image/webp"


def generate_filename(dish_name: str, source_url: str, content_type: str = DEFAULT_CONTENT_TYPE) -> str:
    """Unique storage filename derived from the dish name and the provider URL"""
    url_hash = hashlib.md5(source_url.encode()).hexdigest()[:8]
    extension = IMAGE_EXTENSIONS.get(content_type, IMAGE_EXTENSIONS[DEFAULT_CONTENT_TYPE])
    return f"{slugify(dish_name) or 'dish'}-{url_hash}.{extension}"


def _content_type_of(url: str, header: Optional[str]) -> str:
    content_type = (header or "").split(";")[0].strip().lower()
    if content_type in IMAGE_EXTENSIONS:
        return content_type
    guessed, _ = mimetypes.guess_type(urlparse(url).path)
    if guessed in IMAGE_EXTENSIONS:
        return guessed
    return DEFAULT_CONTENT_TYPE


class GeneratedImageStore:
    """Copies short-lived provider URLs into Supabase Storage"""

    def __init__(
        self,
        db: AsyncSupabaseClient,
        bucket: str,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        session_factory: Callable[[], aiohttp.ClientSession] = aiohttp.ClientSession,
    ):
        self.db = db
        self.bucket = bucket
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.session_factory = session_factory

    async def _download(self, url: str) -> Tuple[bytes, str]:
        """Fetch the image, returning its bytes and content type"""
        try:
            async with self.session_factory() as session:
                async with session.get(url) as response:
                    if response.status == 200:
                        data = await response.read()
                        return data, _content_type_of(url, response.headers.get("Content-Type"))
                    if response.status >= 500 or response.status == 429:
                        raise TransientServiceError(f"Failed to download image: HTTP {response.status}")
                    raise ImageGenerationError(f"Failed to download image: HTTP {response.status}")
        except aiohttp.ClientError as e:
            raise TransientServiceError(f"Error downloading image: {str(e)}")

    async def persist(self, image: GeneratedImage, dish_name: str) -> str:
        image_data, content_type = await call_with_retries(
            lambda: self._download(image.url),
            label=f"Image download for '{dish_name}'",
            max_retries=self.max_retries,
            initial_delay=self.retry_delay,
        )
        path = f"generated/{generate_filename(dish_name, image.url, content_type)}"
        public_url = await self.db.storage_upload(self.bucket, path, image_data, content_type)
        logger.info(f"Stored generated image for '{dish_name}' at {path}")
        return public_url


class ImageGenerator:
    """Per-dish image generation: provider call plus optional permanent storage"""

    def __init__(self, provider, storage: Optional[GeneratedImageStore] = None):
        self.provider = provider
        self.storage = storage

    async def generate(self, dish_name: str) -> GeneratedImage:
        image = await self.provider.generate(build_image_prompt(dish_name))

        if self.storage is not None:
            try:
                permanent_url = await self.storage.persist(image, dish_name)
                return GeneratedImage(url=permanent_url, source=image.source)
            except Exception as e:
                logger.warning(f"Could not store image for '{dish_name}', using provider URL: {str(e)}")

        return image
