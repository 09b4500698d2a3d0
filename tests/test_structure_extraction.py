from types import SimpleNamespace

import httpx
import openai
import pytest

from conftest import TWO_SECTION_MENU, menu_json
from menugen.core.errors import (
    DescriptionGenerationError,
    ErrorKind,
    ExtractionError,
    StructureValidationError,
)
from menugen.services.openai_service import DescriptionGenerator, StructureExtractor, parse_menu_structure


def completion(content, refusal=None):
    message = SimpleNamespace(content=content, refusal=refusal)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeCompletions:
    """Stands in for AsyncOpenAI.chat.completions; replays outcomes in order"""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def fake_client(*outcomes):
    completions = FakeCompletions(*outcomes)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def connection_error():
    return openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))


def test_parse_menu_structure_keeps_order():
    draft = parse_menu_structure(TWO_SECTION_MENU)

    assert [s.name for s in draft.sections] == ["Starters", "Mains"]
    assert [d.name for d in draft.sections[1].dishes] == ["Ribeye Steak", "Catch of the Day", "Mushroom Risotto"]
    assert draft.dish_count == 5


def test_parse_menu_structure_strips_code_fences():
    content = "```json\n" + menu_json(("Desserts", [("Tiramisu", "$8")])) + "\n```"
    draft = parse_menu_structure(content)
    assert draft.sections[0].dishes[0].price == "$8"


def test_parse_menu_structure_finds_json_in_prose():
    content = "Here is the menu: " + menu_json(("Drinks", [("Lemonade", None)])) + " Enjoy!"
    draft = parse_menu_structure(content)
    assert draft.sections[0].dishes[0].price is None


@pytest.mark.parametrize("content", [
    None,
    "",
    "I cannot read this image.",
    '{"sections": [',
    '{"sections": []}',
    '{"sections": [{"name": "Mains", "dishes": []}]}',
    '{"sections": [{"name": "Mains", "dishes": [{"name": "   ", "price": "$5"}]}]}',
    '{"menu": []}',
])
def test_parse_menu_structure_rejects_unusable_output(content):
    with pytest.raises(StructureValidationError) as exc:
        parse_menu_structure(content)
    assert exc.value.kind == ErrorKind.STRUCTURE_VALIDATION


async def test_extractor_sends_image_and_schema(image_bytes):
    client, completions = fake_client(completion(TWO_SECTION_MENU))

    draft = await StructureExtractor(client, retry_delay=0).extract(image_bytes)

    assert draft.dish_count == 5
    request = completions.requests[0]
    assert request["model"] == "gpt-4o"
    assert request["response_format"]["type"] == "json_schema"
    image_part = request["messages"][0]["content"][1]
    assert image_part["image_url"]["url"].startswith("data:image/jpeg;base64,")


async def test_extractor_retries_connection_errors(image_bytes):
    client, completions = fake_client(connection_error(), completion(TWO_SECTION_MENU))

    draft = await StructureExtractor(client, max_retries=3, retry_delay=0).extract(image_bytes)

    assert draft.dish_count == 5
    assert len(completions.requests) == 2


async def test_extractor_gives_up_after_retries(image_bytes):
    client, completions = fake_client(connection_error())

    with pytest.raises(ExtractionError):
        await StructureExtractor(client, max_retries=3, retry_delay=0).extract(image_bytes)
    assert len(completions.requests) == 3


async def test_extractor_does_not_retry_permanent_errors(image_bytes):
    client, completions = fake_client(ValueError("bad request"))

    with pytest.raises(ExtractionError):
        await StructureExtractor(client, max_retries=3, retry_delay=0).extract(image_bytes)
    assert len(completions.requests) == 1


async def test_extractor_treats_refusal_as_structure_error(image_bytes):
    client, _ = fake_client(completion(None, refusal="I can't help with that."))

    with pytest.raises(StructureValidationError):
        await StructureExtractor(client, retry_delay=0).extract(image_bytes)


async def test_extractor_rejects_undecodable_bytes():
    client, completions = fake_client(completion(TWO_SECTION_MENU))

    with pytest.raises(StructureValidationError):
        await StructureExtractor(client, retry_delay=0).extract(b"not an image")
    assert completions.requests == []


async def test_description_generator_returns_stripped_text():
    client, completions = fake_client(completion("  Slow-braised beef in red wine.  "))

    text = await DescriptionGenerator(client, retry_delay=0).generate("Beef Bourguignon")

    assert text == "Slow-braised beef in red wine."
    assert completions.requests[0]["model"] == "gpt-4o-mini"
    assert "Beef Bourguignon" in completions.requests[0]["messages"][1]["content"]


async def test_description_generator_retries_then_fails():
    client, completions = fake_client(connection_error())

    with pytest.raises(DescriptionGenerationError) as exc:
        await DescriptionGenerator(client, max_retries=2, retry_delay=0).generate("Soup")
    assert exc.value.kind == ErrorKind.ENRICHMENT_DESCRIPTION
    assert len(completions.requests) == 2


async def test_description_generator_rejects_empty_text():
    client, _ = fake_client(completion("   "))

    with pytest.raises(DescriptionGenerationError):
        await DescriptionGenerator(client, retry_delay=0).generate("Soup")
