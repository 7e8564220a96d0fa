import pytest

from meterchat.components.chat.citations import FOOTER_HEADER, Citation, format_citation_footer
from meterchat.components.chat.errors import UpstreamStreamError
from meterchat.components.chat.relay import CompletionRelay
from meterchat.components.integrations.claude.service import ClaudeService

from tests.conftest import FakeAnthropicClient


def _relay(fake):
    return CompletionRelay(ClaudeService(api_key="k", client=fake))


def _open(fake, message="Hi", prior_turns=None, use_web_search=False):
    return _relay(fake).open(
        system_preamble="You are a helpful assistant.",
        prior_turns=prior_turns,
        message=message,
        use_web_search=use_web_search,
    )


async def _collect(stream):
    await stream.start()
    return [chunk async for chunk in stream]


@pytest.mark.asyncio
async def test_chunks_are_forwarded_in_order_without_duplicates():
    fake = FakeAnthropicClient()
    fake.reply("Hel", "lo ", "world")

    stream = _open(fake)
    chunks = await _collect(stream)

    assert chunks == ["Hel", "lo ", "world"]
    result = stream.result()
    assert result.text == "Hello world"
    assert result.content == "Hello world"
    assert result.partial is False
    assert result.error is None
    assert result.footer == ""
    assert result.usage == {"input_tokens": 12, "output_tokens": 7}


@pytest.mark.asyncio
async def test_request_carries_system_history_and_message():
    fake = FakeAnthropicClient()
    fake.reply("ok")

    history = [
        {"role": "user", "content": "Earlier question"},
        {"role": "assistant", "content": "Earlier answer"},
    ]
    await _collect(_open(fake, message="Follow up", prior_turns=history, use_web_search=True))

    call = fake.calls[0]
    assert call["system"] == "You are a helpful assistant."
    assert call["messages"] == history + [{"role": "user", "content": "Follow up"}]
    assert call["tools"][0]["name"] == "web_search"


@pytest.mark.asyncio
async def test_citations_are_collected_and_rendered_as_footer():
    fake = FakeAnthropicClient()
    first, second = "Paris is the capital.", " It is large."
    fake.reply(
        first,
        second,
        citations_by_block={
            0: [("Wikipedia", "https://en.wikipedia.org/wiki/Paris"), (None, "https://paris.fr")],
            1: [("Atlas", "https://atlas.example/paris")],
        },
    )

    stream = _open(fake, message="Tell me about Paris", use_web_search=True)
    chunks = await _collect(stream)

    expected_footer = (
        FOOTER_HEADER
        + "[1] Wikipedia: https://en.wikipedia.org/wiki/Paris\n"
        + "[2] https://paris.fr: https://paris.fr\n"
        + "[3] Atlas: https://atlas.example/paris\n"
    )
    assert chunks == [first, second, expected_footer]

    result = stream.result()
    assert result.text == first + second
    assert result.footer == expected_footer
    assert result.content == first + second + expected_footer
    assert [c.url for c in result.citations] == [
        "https://en.wikipedia.org/wiki/Paris",
        "https://paris.fr",
        "https://atlas.example/paris",
    ]
    assert (result.citations[0].start_index, result.citations[0].end_index) == (0, len(first))
    assert (result.citations[2].start_index, result.citations[2].end_index) == (
        len(first),
        len(first) + len(second),
    )


@pytest.mark.asyncio
async def test_failure_before_first_chunk_raises_upstream_error():
    fake = FakeAnthropicClient()
    fake.reply(enter_error=RuntimeError("provider down"))

    stream = _open(fake)
    with pytest.raises(UpstreamStreamError) as excinfo:
        await stream.start()
    assert isinstance(excinfo.value.cause, RuntimeError)
    assert stream.result().error == "RuntimeError"


@pytest.mark.asyncio
async def test_failure_mid_stream_ends_cleanly_and_marks_partial():
    fake = FakeAnthropicClient()
    fake.reply("one ", "two", citations_by_block={0: [("Src", "https://src.example")]}, error_after=ConnectionError("reset"))

    stream = _open(fake)
    chunks = await _collect(stream)

    # No footer on an interrupted stream
    assert chunks == ["one ", "two"]
    result = stream.result()
    assert result.partial is True
    assert result.error == "ConnectionError"
    assert result.footer == ""
    assert result.text == "one two"
    assert len(result.citations) == 1


@pytest.mark.asyncio
async def test_abandoned_stream_is_partial():
    fake = FakeAnthropicClient()
    fake.reply("first", "second", "third")

    stream = _open(fake)
    await stream.start()
    async for chunk in stream:
        assert chunk == "first"
        break
    await stream.aclose()

    result = stream.result()
    assert result.partial is True
    assert result.text == "first"


@pytest.mark.asyncio
async def test_empty_completion():
    fake = FakeAnthropicClient()
    fake.reply()

    stream = _open(fake)
    assert await _collect(stream) == []
    result = stream.result()
    assert result.text == ""
    assert result.partial is False


@pytest.mark.asyncio
async def test_stream_is_single_use():
    fake = FakeAnthropicClient()
    fake.reply("x")

    stream = _open(fake)
    with pytest.raises(RuntimeError):
        stream.__aiter__()
    await _collect(stream)
    with pytest.raises(RuntimeError):
        stream.__aiter__()
    with pytest.raises(RuntimeError):
        await stream.start()


def test_footer_is_empty_without_citations():
    assert format_citation_footer([]) == ""


def test_citation_to_dict():
    citation = Citation(url="https://a.example", title="A", start_index=0, end_index=3)
    assert citation.to_dict() == {"url": "https://a.example", "title": "A", "start_index": 0, "end_index": 3}
