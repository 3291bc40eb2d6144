import pytest

from bookgen.common.errors import ProviderError, ValidationError
from bookgen.generation.book import (
    analyze_book,
    build_pdf,
    identify_main_character,
    map_characters,
    process_complete_book,
)
from bookgen.generation.provider import MockProvider, decode_image, is_retryable

from conftest import FakeProvider, png_bytes


class FlakyAnalysis(MockProvider):
    async def analyze_page(self, page_image, page_number):
        if page_number == 2:
            raise ProviderError("vision model unavailable", status=503)
        return await super().analyze_page(page_image, page_number)


async def test_analysis_failure_falls_back_per_page():
    pages = [png_bytes(), png_bytes(), png_bytes()]
    analysis = await analyze_book(FlakyAnalysis(), pages)
    assert analysis["total_pages"] == 3
    assert analysis["pages"][1]["characters"] == []
    assert analysis["pages"][1]["error"] == "vision model unavailable"
    assert analysis["character_consistency"]["total_appearances"] == 2
    assert [m["page_number"] for m in map_characters(analysis)] == [1, 3]


async def test_analyze_book_requires_pages():
    with pytest.raises(ValidationError):
        await analyze_book(MockProvider(), [])


def test_identify_main_character_picks_most_frequent():
    pages = [
        {"characters": [{"description": "Fox", "is_main_character": True}]},
        {"characters": [{"description": "fox", "is_main_character": True}]},
        {"characters": [{"description": "owl", "is_main_character": True}]},
        {"characters": [{"description": "tree", "is_main_character": False}]},
    ]
    main = identify_main_character(pages)
    assert main["description"] == "fox"
    assert main["frequency"] == 2
    assert identify_main_character([])["frequency"] == 0


async def test_failed_page_keeps_original_image():
    provider = FakeProvider()
    provider.failing_pages = {2}
    pages = [png_bytes("red"), png_bytes("green")]
    result = await process_complete_book(provider, pages, png_bytes(), "Mia", "Story", batch_size=2)

    assert result["success"] is True
    assert result["character_replacements"] == 2
    book = result["personalized_book"]
    assert book["metadata"]["failed_pages"] == 1
    first, second = book["pages"]
    assert first["personalized"] is True
    assert second["personalized"] is False
    assert second["image"] == pages[1]


async def test_book_fails_when_no_page_succeeds():
    provider = FakeProvider()
    provider.failing_pages = {1}
    result = await process_complete_book(provider, [png_bytes()], png_bytes(), "Mia", "Story")
    assert result["success"] is False


def test_build_pdf_puts_cover_first():
    pdf = build_pdf(png_bytes("blue"), [png_bytes("red"), png_bytes("green")])
    assert pdf.startswith(b"%PDF")
    assert b"/Count 3" in pdf


def test_build_pdf_rejects_garbage():
    with pytest.raises(ValidationError):
        build_pdf(None, [b"not an image"])
    with pytest.raises(ValidationError):
        build_pdf(None, [])


def test_decode_image_accepts_data_uri():
    assert decode_image("data:image/png;base64,aGVsbG8=") == b"hello"
    with pytest.raises(ValidationError):
        decode_image("***")


@pytest.mark.parametrize("status,expected", [(None, True), (429, True), (503, True), (400, False), (404, False)])
def test_is_retryable(status, expected):
    assert is_retryable(status) is expected
