#!/usr/bin/env python3
"""
Default content extractor: raw feed/page content in, plain text plus light
metadata out.

HTML is sanitized and converted to Markdown with BeautifulSoup + markdownify,
then the Markdown formatting is stripped so the pipeline only ever sees plain
text with paragraph breaks preserved.
"""

import json
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from markdownify import markdownify as md

from config import get_logger

logger = get_logger("extractor")

# Markdown cleanup patterns
MD_HEADING_PATTERN = re.compile(r'^#+\s+', re.MULTILINE)
MD_EMPHASIS_PATTERN = re.compile(r'(\*\*|__|\*|_|~~|`)')
MD_LINK_PATTERN = re.compile(r'\[([^\]]+)\]\([^)]+\)')
MD_IMAGE_PATTERN = re.compile(r'!\[[^\]]*\]\([^)]+\)')
MD_LIST_PATTERN = re.compile(r'^\s*[-*+]\s+', re.MULTILINE)
MD_NUMBERED_LIST_PATTERN = re.compile(r'^\s*\d+\.\s+', re.MULTILINE)
MD_CODE_FENCE_PATTERN = re.compile(r'^```[^\n]*$', re.MULTILINE)
MD_BLOCKQUOTE_PATTERN = re.compile(r'^>\s?', re.MULTILINE)
MD_RULE_PATTERN = re.compile(r'^\s*([-*_]\s*){3,}$', re.MULTILINE)

_HTML_HINT = re.compile(r'<\s*(html|body|p|div|br|a|span|article|h[1-6]|ul|ol|li|img)\b', re.I)
_TRACKING_IMG = re.compile(r'(pixel|tracker|counter|spacer|blank|trans)', re.I)

TITLE_MAX_LENGTH = 100


def looks_like_html(content: str) -> bool:
    return bool(content) and bool(_HTML_HINT.search(content))


def clean_html_to_markdown(html_content: str, base_url: Optional[str] = None) -> str:
    """Sanitize HTML content and convert it to Markdown.

    - Removes dangerous and non-content elements (script/style/iframe/nav/etc.)
    - Strips inline event handlers and javascript: URLs
    - Removes common tracking pixels
    - Resolves relative href/src against ``base_url`` when given; otherwise
      non-absolute references are neutralized (links -> ``#``, images removed)
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, 'html.parser')

    for tag in soup([
        "script", "style", "iframe", "form", "object", "embed", "noscript",
        "frame", "frameset", "applet", "meta", "base", "link", "nav", "footer", "aside",
    ]):
        tag.decompose()

    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            if attr.lower().startswith('on'):
                del tag[attr]
            elif attr.lower() in ('href', 'src') and str(tag[attr]).lower().startswith('javascript:'):
                del tag[attr]

    for img in soup.find_all('img'):
        src = img.get('src', '')
        if _TRACKING_IMG.search(src) or (re.search(r'\.(gif|png)$', src, re.I) and img.get('height') in ('0', '1')):
            img.decompose()

    def _rewrite_url(value: str, attr: str) -> Optional[str]:
        if attr == 'href' and value.startswith('mailto:'):
            return value
        if value.startswith(('http://', 'https://')):
            return value
        if base_url:
            resolved = urljoin(base_url, value)
            if resolved.startswith(('http://', 'https://')):
                return resolved
        return None

    for tag in soup.find_all(['a', 'img']):
        for attr in ('href', 'src'):
            if not tag.has_attr(attr) or not str(tag[attr]):
                continue
            rewritten = _rewrite_url(str(tag[attr]), attr)
            if rewritten:
                tag[attr] = rewritten
            elif attr == 'href':
                tag[attr] = '#'
            else:
                del tag[attr]

    # wrap_width=0 keeps URLs on one line
    return md(str(soup), heading_style="ATX", wrap_width=0)


def markdown_to_plain_text(markdown_text: str) -> str:
    """Convert Markdown to plain text by removing formatting elements."""
    if not markdown_text:
        return ""

    text = markdown_text
    text = MD_IMAGE_PATTERN.sub('', text)
    text = MD_LINK_PATTERN.sub(r'\1', text)
    text = MD_CODE_FENCE_PATTERN.sub('', text)
    text = MD_HEADING_PATTERN.sub('', text)
    text = MD_RULE_PATTERN.sub('', text)
    text = MD_EMPHASIS_PATTERN.sub('', text)
    text = MD_LIST_PATTERN.sub('', text)
    text = MD_NUMBERED_LIST_PATTERN.sub('', text)
    text = MD_BLOCKQUOTE_PATTERN.sub('', text)

    # Collapse runs of spaces, keep paragraph breaks
    text = re.sub(r'[ \t]+', ' ', text)
    text = re.sub(r' *\n *', '\n', text)
    text = re.sub(r'\n{3,}', '\n\n', text)
    return text.strip()


_CUE_TIMING = re.compile(r'\d{1,2}:\d{2}(:\d{2})?[.,]\d{3}\s*-->\s*\d{1,2}:\d{2}(:\d{2})?[.,]\d{3}[^\n]*')
_CUE_NUMBER = re.compile(r'^\d+\s*$', re.MULTILINE)
_VTT_BLOCK = re.compile(r'^(NOTE|STYLE|REGION)\b.*?(\n\s*\n|\Z)', re.MULTILINE | re.DOTALL)
_TAG = re.compile(r'<[^>]+>')


def is_caption_file(content: str) -> bool:
    return bool(content) and (content.lstrip().upper().startswith('WEBVTT') or bool(_CUE_TIMING.search(content)))


def captions_to_text(content: str) -> str:
    """Convert SRT/WebVTT captions (or a Podcast 2.0 JSON transcript) to plain text.

    Cue numbers, timings, NOTE/STYLE blocks and inline voice/markup tags are
    removed; consecutive duplicate lines (rolling captions) are collapsed.
    Content that is neither captions nor JSON is returned stripped.
    """
    if not content:
        return ""

    stripped = content.strip()
    if stripped.startswith('{'):
        try:
            data = json.loads(stripped)
        except ValueError:
            data = None
        if isinstance(data, dict) and isinstance(data.get('segments'), list):
            bodies = [str(seg.get('body', '')).strip() for seg in data['segments'] if isinstance(seg, dict)]
            return ' '.join(b for b in bodies if b)

    if not is_caption_file(stripped):
        return stripped

    text = stripped.replace('\r\n', '\n')
    text = re.sub(r'^WEBVTT[^\n]*', '', text, flags=re.IGNORECASE)
    text = _VTT_BLOCK.sub('', text)
    text = _CUE_TIMING.sub('', text)
    text = _CUE_NUMBER.sub('', text)
    text = _TAG.sub('', text)

    lines: List[str] = []
    for line in text.split('\n'):
        line = line.strip()
        if line and (not lines or lines[-1] != line):
            lines.append(line)
    return ' '.join(lines)


def _meta_content(soup: BeautifulSoup, *selectors: Dict[str, str]) -> Optional[str]:
    for attrs in selectors:
        tag = soup.find('meta', attrs=attrs)
        if tag and tag.get('content'):
            return str(tag['content']).strip()
    return None


def _parse_timestamp(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        try:
            dt = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            logger.debug(f"Unparseable date '{value}'")
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def extract_metadata(html_content: str, base_url: Optional[str] = None) -> Dict[str, Any]:
    """Title, author, publication time and lead image from common HTML metadata."""
    soup = BeautifulSoup(html_content, 'html.parser')

    title = _meta_content(soup, {'property': 'og:title'}, {'name': 'twitter:title'})
    if not title:
        heading = soup.find('title') or soup.find('h1')
        title = heading.get_text(strip=True) if heading else None

    author = _meta_content(soup, {'name': 'author'}, {'property': 'article:author'})
    published = _meta_content(
        soup,
        {'property': 'article:published_time'},
        {'name': 'date'},
        {'itemprop': 'datePublished'},
    )
    if not published:
        time_tag = soup.find('time', attrs={'datetime': True})
        published = time_tag['datetime'] if time_tag else None

    image_url = _meta_content(soup, {'property': 'og:image'}, {'name': 'twitter:image'})
    if image_url and base_url:
        image_url = urljoin(base_url, image_url)

    return {
        'title': title[:TITLE_MAX_LENGTH] if title else None,
        'author': author or None,
        'published_at': _parse_timestamp(published),
        'image_url': image_url if image_url and image_url.startswith(('http://', 'https://')) else None,
    }


def extract(raw_content: str, base_url: Optional[str] = None) -> Dict[str, Any]:
    """Extract plain text and light metadata from raw HTML or text.

    Returns:
        {'text', 'title', 'author', 'published_at', 'image_url'}; metadata values may be None.
    """
    raw_content = raw_content or ""
    if looks_like_html(raw_content):
        metadata = extract_metadata(raw_content, base_url)
        text = markdown_to_plain_text(clean_html_to_markdown(raw_content, base_url=base_url))
    else:
        text = markdown_to_plain_text(raw_content.replace('\r\n', '\n'))
        first_line = next((line.strip() for line in text.split('\n') if line.strip()), "")
        metadata = {
            'title': first_line[:TITLE_MAX_LENGTH] or None,
            'author': None,
            'published_at': None,
            'image_url': None,
        }
    return {'text': text, **metadata}
