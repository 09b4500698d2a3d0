# menugen/services/openai_service.py
import asyncio
import json
import logging
import re
from typing import Optional

from openai import AsyncOpenAI
from pydantic import ValidationError

from menugen.core.errors import DescriptionGenerationError, ExtractionError, StructureValidationError
from menugen.core.retry import call_with_retries
from menugen.models.menu import DraftMenu
from menugen.services.image_processor import optimize_for_vision

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT = """You are a menu extraction expert. Read this photographed menu and return its structure.

- Group dishes into the sections printed on the menu (e.g. "Starters", "Mains"), in the order they appear.
- If the menu has no visible sections, return a single section named "Menu".
- For each dish give its name exactly as printed, properly capitalized.
- For price, copy the price text exactly as printed including any currency symbol (e.g. "$12.50", "14 €", "Market Price"). Use null when no price is shown.
- Do not invent dishes, descriptions or prices.
"""

# Enforced output shape for the vision model
MENU_STRUCTURE_SCHEMA = {
    "type": "object",
    "properties": {
        "sections": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "dishes": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "name": {"type": "string"},
                                "price": {"type": ["string", "null"]},
                            },
                            "required": ["name", "price"],
                            "additionalProperties": False,
                        },
                    },
                },
                "required": ["name", "dishes"],
                "additionalProperties": False,
            },
        },
    },
    "required": ["sections"],
    "additionalProperties": False,
}

DESCRIPTION_SYSTEM_PROMPT = (
    "You are a food writer. Generate a brief, appetizing description (1-2 sentences, "
    "at most 40 words) for the given dish name. Be descriptive but concise and do not "
    "mention prices."
)


def parse_menu_structure(content: Optional[str]) -> DraftMenu:
    """Turn raw model output into a validated draft or raise StructureValidationError"""
    if not content or not content.strip():
        raise StructureValidationError("Vision service returned an empty response")

    # Clean up markdown formatting
    content = content.strip()
    if content.startswith("```"):
        content = re.sub(r"^```(?:json)?", "", content).rstrip("`").strip()

    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        json_match = re.search(r'\{.*\}', content, re.DOTALL)
        if not json_match:
            raise StructureValidationError("Vision service response is not JSON")
        try:
            data = json.loads(json_match.group())
        except json.JSONDecodeError:
            raise StructureValidationError("Vision service response is not valid JSON")

    try:
        return DraftMenu.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        detail = f"{location}: {first['msg']}" if location else first["msg"]
        raise StructureValidationError(f"Extracted menu failed validation ({detail})")


class StructureExtractor:
    """Sends the menu photo to the vision model and returns a validated draft"""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str = "gpt-4o",
        max_retries: int = 3,
        retry_delay: float = 2.0,
    ):
        self.client = client
        self.model = model
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    async def extract(self, image_bytes: bytes) -> DraftMenu:
        loop = asyncio.get_running_loop()
        try:
            image_url = await loop.run_in_executor(None, optimize_for_vision, image_bytes)
        except Exception as e:
            raise StructureValidationError(f"Menu image could not be decoded: {str(e)}")

        async def request():
            return await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": EXTRACTION_PROMPT},
                            {"type": "image_url", "image_url": {"url": image_url, "detail": "high"}},
                        ],
                    }
                ],
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": "menu_structure",
                        "strict": True,
                        "schema": MENU_STRUCTURE_SCHEMA,
                    },
                },
                max_tokens=4096,
                temperature=0.1,
            )

        try:
            response = await call_with_retries(
                request,
                label="Menu extraction",
                max_retries=self.max_retries,
                initial_delay=self.retry_delay,
            )
        except Exception as e:
            logger.error(f"OpenAI extraction error: {str(e)}")
            raise ExtractionError(f"Vision service request failed: {str(e)}")

        if not response.choices:
            raise StructureValidationError("Vision service returned no choices")

        message = response.choices[0].message
        if getattr(message, "refusal", None):
            raise StructureValidationError(f"Vision service refused the request: {message.refusal}")

        logger.info(f"OpenAI raw response: {(message.content or '')[:200]}...")
        draft = parse_menu_structure(message.content)
        logger.info(f"Extracted {len(draft.sections)} sections with {draft.dish_count} dishes")
        return draft


class DescriptionGenerator:
    """Writes a short description for a dish from its name"""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str = "gpt-4o-mini",
        max_retries: int = 3,
        retry_delay: float = 2.0,
    ):
        self.client = client
        self.model = model
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    async def generate(self, dish_name: str) -> str:
        async def request():
            return await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": DESCRIPTION_SYSTEM_PROMPT},
                    {"role": "user", "content": f"Generate a description for this dish: {dish_name}"},
                ],
                max_tokens=100,
                temperature=0.7,
            )

        try:
            response = await call_with_retries(
                request,
                label=f"Description for '{dish_name}'",
                max_retries=self.max_retries,
                initial_delay=self.retry_delay,
            )
        except Exception as e:
            raise DescriptionGenerationError(f"Description request failed: {str(e)}")

        text = ""
        if response.choices:
            text = (response.choices[0].message.content or "").strip()
        if not text:
            raise DescriptionGenerationError("Text service returned an empty description")
        return text
