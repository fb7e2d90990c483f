##########################################################################################
#
# Script name: content.py
#
# Description: Fetches an article page and extracts its main text.
#
##########################################################################################

import asyncio
import logging
import re
from dataclasses import dataclass, field

import requests
from bs4 import BeautifulSoup

from .backoff import BackoffPolicy, log_retry, run_with_backoff
from .config import Settings
from .errors import ContentFetchError
from .utils import normalize_whitespace, word_count


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)

BROWSER_USER_AGENT = 'Mozilla/5.0 (compatible; feed-digest/1.0; +https://github.com/)'
HTML_ACCEPT = 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8'

NOISE_SELECTORS = (
    'script, style, nav, header, footer, aside, iframe, noscript, '
    '[role="navigation"], [role="banner"], [role="contentinfo"], '
    '.ad, .advertisement, .social-share, .comments'
)
CONTENT_SELECTORS = [
    'article',
    '[role="main"]',
    'main',
    '.post-content',
    '.entry-content',
    '.article-content',
    '.content',
    '#content',
    '.post-body',
    '.article-body',
]
MIN_SELECTOR_CHARS = 200
MIN_PARAGRAPH_CHARS = 100
MAX_PARAGRAPHS = 15
SENTENCES_PER_GROUP = 4


# ****************************************************************************************
# Classes
# ****************************************************************************************


@dataclass(frozen=True)
class ExtractedContent:
    text: str
    paragraphs: list[str] = field(default_factory=list)
    word_count: int = 0


# ****************************************************************************************
# Functions
# ****************************************************************************************


def group_sentences(text: str, size: int = SENTENCES_PER_GROUP, max_sentences: int | None = None) -> list[str]:
    '''
    Join consecutive sentences into groups of `size`, keeping only groups
    longer than MIN_PARAGRAPH_CHARS.
    '''
    sentences = re.split(r'(?<=[.!?])\s+', normalize_whitespace(text))
    if max_sentences is not None:
        sentences = sentences[:max_sentences]
    grouped = []
    for start in range(0, len(sentences), size):
        chunk = ' '.join(sentences[start:start + size]).strip()
        if len(chunk) > MIN_PARAGRAPH_CHARS:
            grouped.append(chunk)
    return grouped


def _split_paragraphs(block: str) -> list[str]:
    by_breaks = [part.strip() for part in re.split(r'\n\s*\n+', block) if len(part.strip()) > MIN_PARAGRAPH_CHARS]
    if len(by_breaks) >= 3:
        return [normalize_whitespace(part) for part in by_breaks][:MAX_PARAGRAPHS]
    return group_sentences(block)[:MAX_PARAGRAPHS]


def extract_content(html: str) -> ExtractedContent:
    soup = BeautifulSoup(html, 'html.parser')
    for node in soup.select(NOISE_SELECTORS):
        node.decompose()

    block = ''
    for selector in CONTENT_SELECTORS:
        element = soup.select_one(selector)
        if element is not None:
            candidate = element.get_text('\n')
            if len(candidate.strip()) > MIN_SELECTOR_CHARS:
                block = candidate
                break
    if len(block.strip()) < MIN_PARAGRAPH_CHARS and soup.body is not None:
        block = soup.body.get_text('\n')

    text = normalize_whitespace(block)
    return ExtractedContent(
        text=text,
        paragraphs=_split_paragraphs(block),
        word_count=word_count(text),
    )


def fetch_html(url: str, timeout: float) -> str:
    response = requests.get(
        url,
        headers={
            'User-Agent': BROWSER_USER_AGENT,
            'Accept': HTML_ACCEPT,
            'Accept-Language': 'en-US,en;q=0.5',
        },
        timeout=timeout,
    )
    response.raise_for_status()
    return response.text


async def fetch_article_content(url: str, settings: Settings, policy: BackoffPolicy | None = None) -> ExtractedContent:
    '''
    Download `url` and extract its main text. Transient failures are retried;
    anything left over surfaces as ContentFetchError for the caller to degrade.
    '''
    if not url:
        raise ContentFetchError('Entry has no link')
    policy = policy or BackoffPolicy.from_settings(settings, on_retry=log_retry(f'Content {url}'))
    try:
        html = await run_with_backoff(
            lambda: asyncio.to_thread(fetch_html, url, settings.content_fetch_timeout),
            policy,
        )
    except requests.RequestException as exc:
        raise ContentFetchError(str(exc)) from exc
    content = extract_content(html)
    if not content.text:
        raise ContentFetchError(f'No readable text at {url}')
    log.debug('Extracted %d words from %s', content.word_count, url)
    return content
