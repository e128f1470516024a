import feedparser

from fetcher import FeedFetcher


def test_normalize_entry_identity_basic():
    fetcher = FeedFetcher()
    title, url, guid = fetcher._normalize_entry_identity(
        "  Example Title  ",
        "https://example.com/a/very/long/path" + "?" + "x" * 2050,
        "guid-value" * 30,
    )
    assert title == "Example Title"
    assert len(url) == 2048
    assert url.startswith("https://example.com/a/very/long/path?")
    assert len(guid) == 64


def test_normalize_entry_identity_keeps_short_guid():
    fetcher = FeedFetcher()
    _, _, guid = fetcher._normalize_entry_identity("t", "u", "guid-value" * 20)
    assert guid == "guid-value" * 20


def test_normalize_entry_identity_defaults():
    fetcher = FeedFetcher()
    title, url, guid = fetcher._normalize_entry_identity(None, None, None)
    assert title == ""
    assert url == ""
    assert guid == ""


def test_normalize_entry_identity_blank_title():
    fetcher = FeedFetcher()
    title, url, guid = fetcher._normalize_entry_identity("   ", " http://example.com ", " abc ")
    assert title == ""
    assert url == "http://example.com"
    assert guid == "abc"


def test_normalize_podcast_entry():
    fetcher = FeedFetcher()
    entry = feedparser.FeedParserDict({
        'id': 'episode-42',
        'link': 'https://pod.example.com/42',
        'title': 'Episode 42',
        'summary': '<p>Show notes</p>',
        'published': 'Mon, 06 Jan 2025 10:00:00 GMT',
        'itunes_duration': '1:02:03',
        'links': [
            feedparser.FeedParserDict({
                'rel': 'enclosure', 'href': 'https://cdn.example.com/42.mp3?token=x', 'type': 'audio/mpeg', 'length': '1234',
            }),
            feedparser.FeedParserDict({'rel': 'transcript', 'href': 'https://pod.example.com/42.json', 'type': 'application/json'}),
            feedparser.FeedParserDict({'rel': 'transcript', 'href': 'https://pod.example.com/42.vtt', 'type': 'text/vtt'}),
        ],
    })

    normalized = fetcher.normalize_entry(entry)

    assert normalized['guid'] == 'episode-42'
    assert normalized['link'] == 'https://pod.example.com/42'
    assert normalized['content'] == '<p>Show notes</p>'
    assert normalized['enclosure']['url'] == 'https://cdn.example.com/42.mp3?token=x'
    assert normalized['itunes_duration'] == '1:02:03'
    assert normalized['transcript_url'] == 'https://pod.example.com/42.vtt'
    assert normalized['published_at'] == 1736157600


def test_extract_content_prefers_full_content():
    fetcher = FeedFetcher()
    entry = feedparser.FeedParserDict({
        'content': [{'value': '<p>Full body</p>'}],
        'summary': 'Teaser',
    })
    assert fetcher.extract_content(entry) == '<p>Full body</p>'
    assert fetcher.extract_content(feedparser.FeedParserDict({})) == ""
