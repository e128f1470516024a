import json
import os
import re

# Modules call init_telemetry() at import time
os.environ.setdefault("DISABLE_TELEMETRY", "true")

import pytest

from budget import BudgetGuard
from llm_client import GenerationClient
from retry import RetryableFetcher
from utils import RateLimiter, RetryHelper


class FakeMessage:
    def __init__(self, content):
        self.content = content
        self.refusal = None


class FakeChoice:
    def __init__(self, content, finish_reason="stop"):
        self.message = FakeMessage(content)
        self.finish_reason = finish_reason


class FakeUsage:
    def __init__(self, prompt_tokens, completion_tokens):
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens


class FakeResp:
    def __init__(self, content, prompt_tokens=100, completion_tokens=50, finish_reason="stop"):
        self.choices = [FakeChoice(content, finish_reason)]
        self.usage = FakeUsage(prompt_tokens, completion_tokens)


class FakeCompletions:
    """Returns scripted responses; a callable reply gets the request kwargs."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if callable(reply):
            reply = reply(kwargs)
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, str):
            return FakeResp(reply)
        return reply


class FakeTranscriptions:
    def __init__(self, text="", duration=None):
        self.text = text
        self.duration = duration
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)

        class Result:
            pass

        result = Result()
        result.text = self.text
        result.duration = self.duration
        result.language = "en"
        return result


class FakeOpenAI:
    def __init__(self, replies=("{}",), transcript="", audio_duration=None):
        self.completions = FakeCompletions(replies)
        self.transcriptions = FakeTranscriptions(transcript, audio_duration)

        class Chat:
            pass

        class Audio:
            pass

        self.chat = Chat()
        self.chat.completions = self.completions
        self.audio = Audio()
        self.audio.transcriptions = self.transcriptions


async def no_sleep(delay):
    return None


def make_client(fake, *, daily=1000.0, monthly=10000.0, tpm=10_000_000, rpm=10_000, max_retries=2, db=None):
    """GenerationClient with generous limits and no real waiting."""
    return GenerationClient(
        rate_limiter=RateLimiter(requests_per_minute=rpm, tokens_per_minute=tpm, max_wait=1.0, sleep=no_sleep),
        budget=BudgetGuard(daily_limit=daily, monthly_limit=monthly),
        fetcher=RetryableFetcher(
            max_retries=max_retries,
            timeout=5.0,
            retry_helper=RetryHelper(max_retries=max_retries, base_delay=0.01, max_delay=0.05, jitter=0),
            sleep=no_sleep,
        ),
        db=db,
        client_override=fake,
        model="gpt-4o",
    )


@pytest.fixture
def fake_openai():
    return FakeOpenAI()


def summary_json(**overrides):
    data = {
        "headline": "A clear headline about the content",
        "tldr": "The content explains one idea in enough words to be useful.",
        "fullSummary": "This is the full summary of the content. " * 6,
        "keyPoints": ["First point", "Second point", "Third point"],
        "keyTakeaways": [
            {"takeaway": "Main lesson", "context": "Why it matters", "confidence": 0.9},
        ],
        "relatedIdeas": [],
        "alliedTrivia": [],
    }
    data.update(overrides)
    return json.dumps(data)


_SECTION_MARKER = re.compile(r"This is section (\d+) of (\d+)")
_INSIGHT_MARKER = re.compile(r"insight from section \d+")


def map_reduce_reply(kwargs):
    """Chunk calls echo their section number; the combine call turns every note into a takeaway."""
    prompt = kwargs["messages"][-1]["content"]
    section = _SECTION_MARKER.search(prompt)
    if section:
        index = section.group(1)
        return json.dumps({
            "mainPoints": [f"point from section {index}"],
            "insights": [f"insight from section {index}"],
        })
    insights = sorted(set(_INSIGHT_MARKER.findall(prompt)))
    return summary_json(
        keyPoints=[f"Combined point {i}" for i in range(3)],
        keyTakeaways=[
            {"takeaway": insight, "context": "Synthesized from chunk notes", "confidence": 0.8}
            for insight in insights
        ],
    )


def long_text(target_tokens, words_per_paragraph=60):
    """Paragraph text of roughly `target_tokens` estimated tokens."""
    words_needed = int(target_tokens / 1.3) + 1
    paragraphs = []
    written = 0
    index = 0
    while written < words_needed:
        paragraphs.append(" ".join(f"w{index}x{j}" for j in range(words_per_paragraph)) + ".")
        written += words_per_paragraph
        index += 1
    return "\n\n".join(paragraphs)
