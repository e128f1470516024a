import json

import pytest

from chunker import Chunker
from conftest import FakeOpenAI, long_text, make_client, map_reduce_reply, summary_json
from schema import DEGRADED_HEADLINE
from summarizer import SummarizationOrchestrator, format_prompt, load_prompts


def test_prompts_load_with_all_templates():
    prompts = load_prompts()
    for key in ("system", "short_content", "chunk_summary", "combine_chunks", "podcast", "validation"):
        assert prompts.get(key), key


def test_format_prompt_leaves_json_braces_alone():
    template = 'Content: {content}\n{"headline": "..."}'
    assert format_prompt(template, content="hello") == 'Content: hello\n{"headline": "..."}'


@pytest.mark.asyncio
async def test_short_content_single_call():
    fake = FakeOpenAI(replies=[summary_json()])
    orchestrator = SummarizationOrchestrator(make_client(fake))

    result = await orchestrator.summarize("word " * 500, title="Short")

    assert result.strategy == "short"
    assert result.call_count == 1
    assert len(fake.completions.calls) == 1
    assert not result.degraded
    assert result.summary.headline == "A clear headline about the content"
    # Topped up from key points
    assert len(result.summary.key_takeaways) == 3
    assert result.input_tokens == 100 and result.output_tokens == 50
    assert 0 < result.quality_score <= 100


@pytest.mark.asyncio
async def test_long_content_maps_every_chunk_then_combines_once():
    fake = FakeOpenAI(replies=[map_reduce_reply])
    chunker = Chunker(max_tokens_per_chunk=2000, overlap_tokens=100)
    orchestrator = SummarizationOrchestrator(make_client(fake), chunker=chunker)
    text = long_text(20000)

    result = await orchestrator.summarize(text, title="Long read")

    chunks = chunker.chunk(text)
    assert result.strategy == "long"
    assert result.chunk_count == len(chunks) > 1
    prompts = [call["messages"][-1]["content"] for call in fake.completions.calls]
    chunk_prompts = [p for p in prompts if "This is section" in p]
    combine_prompts = [p for p in prompts if "Synthesize these section summaries" in p]
    assert len(chunk_prompts) == len(chunks)
    assert len(combine_prompts) == 1
    # The combine call comes last and sees every chunk note
    assert prompts[-1] == combine_prompts[0]
    for i in range(1, len(chunks) + 1):
        assert f"insight from section {i}" in combine_prompts[0]
    assert result.call_count == len(chunks) + 1
    assert result.input_tokens == 100 * result.call_count
    assert "Long read" in combine_prompts[0]


@pytest.mark.asyncio
async def test_transcript_uses_podcast_prompt():
    fake = FakeOpenAI(replies=[summary_json(speakers=[{"name": "Host", "role": "host"}])])
    orchestrator = SummarizationOrchestrator(make_client(fake))

    result = await orchestrator.summarize(
        "spoken " * 3000, title="Episode 12", content_type="podcast_episode", duration_seconds=3600
    )

    assert result.strategy == "podcast"
    prompt = fake.completions.calls[0]["messages"][-1]["content"]
    assert "Episode 12" in prompt
    assert "60 minutes" in prompt
    assert result.summary.speakers[0].name == "Host"


@pytest.mark.asyncio
async def test_malformed_output_yields_degraded_summary():
    fake = FakeOpenAI(replies=["I could not produce JSON, sorry"])
    orchestrator = SummarizationOrchestrator(make_client(fake))

    result = await orchestrator.summarize("word " * 300)

    assert result.degraded
    assert result.summary.headline == DEGRADED_HEADLINE
    assert result.summary.full_summary == "I could not produce JSON, sorry"
    assert result.cost > 0


@pytest.mark.asyncio
async def test_review_summary_handles_bad_json():
    fake = FakeOpenAI(replies=[summary_json(), "not json", json.dumps({"isValid": True, "issues": []})])
    orchestrator = SummarizationOrchestrator(make_client(fake))
    result = await orchestrator.summarize("word " * 300)

    review = await orchestrator.review_summary("word " * 300, result.summary)
    assert review["isValid"] is None
    review = await orchestrator.review_summary("word " * 300, result.summary)
    assert review["isValid"] is True
