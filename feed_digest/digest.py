##########################################################################################
#
# Script name: digest.py
#
# Description: Per-item digest pipeline: cache lookup, content fetch, layered summary
#              generation, and cache write.
#
##########################################################################################

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

from .cache import DIGESTS, CacheStore
from .config import Settings
from .content import ExtractedContent, group_sentences
from .errors import DigestError, ResponseDecodeError
from .models import Digest, DigestLayers, Entry, ExtendedContentMeta, ParagraphDigest
from .utils import content_fingerprint, strip_html, truncate_text, word_count


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)

MIN_CONTENT_FOR_PARAGRAPHS = 200
MAX_PARAGRAPH_DIGESTS = 10
OVERALL_FALLBACK_CHARS = 300
ONE_LINE_FALLBACK_CHARS = 100
MIN_POINT_CHARS = 20
MANUAL_MAX_SENTENCES = 40
MANUAL_MAX_SECTIONS = 8
MANUAL_FALLBACK_CHARS = 200

CUSTOM_PROMPT_SYSTEM = (
    'You are an article summarization agent. Follow the instructions exactly. '
    'Output ONLY valid JSON - no markdown, no code blocks, no explanations.'
)
PARAGRAPH_SYSTEM = (
    'You are a technical content analyzer for senior developers. Your task is to '
    'intelligently split content into logical sections and create summaries.'
)
SECTION_SYSTEM = (
    'You are a technical content analyzer. Identify and summarize key sections or themes from the content.'
)
OVERALL_SYSTEM = (
    'You are a technical content summarizer for senior software developers. '
    'Create comprehensive yet concise summaries.'
)
ONE_LINE_SYSTEM = 'You are a technical content summarizer. Create ultra-concise one-line summaries.'
MANUAL_SYSTEM = 'You are a technical content summarizer. Create concise summaries.'


class TextGenerator(Protocol):
    async def generate(self, system_prompt: str, user_prompt: str) -> str: ...

    async def generate_json(self, system_prompt: str, user_prompt: str) -> Any: ...


class DigestState(Enum):
    START = 'start'
    CACHE_CHECK = 'cache_check'
    CACHE_HIT = 'cache_hit'
    CACHE_MISS = 'cache_miss'
    FETCH_CONTENT = 'fetch_content'
    GENERATE_LAYERS = 'generate_layers'
    CACHE_WRITE = 'cache_write'
    DONE = 'done'


@dataclass(frozen=True)
class DigestResult:
    digest: Digest
    cached: bool


# ****************************************************************************************
# Functions
# ****************************************************************************************


def degraded_layers(content: str) -> DigestLayers:
    overall = truncate_text(content, OVERALL_FALLBACK_CHARS)
    return DigestLayers(overall=overall, one_line=truncate_text(overall, ONE_LINE_FALLBACK_CHARS))


def _points_from_text(text: str) -> list[dict]:
    lines = [line.strip() for line in re.split(r'\n+', text) if len(line.strip()) > MIN_POINT_CHARS]
    return [{'title': f'Point {position + 1}', 'summary': line} for position, line in enumerate(lines)]


def _paragraph_rows(parsed: Any) -> list:
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        for value in parsed.values():
            if isinstance(value, list):
                return value
    return []


# ****************************************************************************************
# Classes
# ****************************************************************************************


class DigestPipeline:
    '''
    Turns one feed entry into a layered Digest.

    Once some content is available a Digest is always produced: failed
    content fetches fall back to the feed body, and each failed generation
    layer falls back to truncated text. Only an entry with neither extended
    content nor a feed body raises DigestError.
    '''

    def __init__(
        self,
        settings: Settings,
        cache: CacheStore,
        summarizer: TextGenerator,
        fetch_content: Callable[[str], Awaitable[ExtractedContent]],
        custom_prompt: str | None = None,
    ):
        self.settings = settings
        self.cache = cache
        self.summarizer = summarizer
        self.fetch_content = fetch_content
        self.custom_prompt = custom_prompt

    def _trace(self, fingerprint: str, state: DigestState) -> None:
        log.debug('digest %s -> %s', fingerprint[:12], state.value)

    async def process(self, entry: Entry) -> DigestResult:
        fingerprint = content_fingerprint(entry.title, entry.link, entry.published_at)
        self._trace(fingerprint, DigestState.START)

        self._trace(fingerprint, DigestState.CACHE_CHECK)
        cached = await self._lookup(fingerprint)
        if cached is not None:
            self._trace(fingerprint, DigestState.CACHE_HIT)
            log.info('Using cached digest for: %s', entry.title)
            self._trace(fingerprint, DigestState.DONE)
            return DigestResult(digest=cached, cached=True)
        self._trace(fingerprint, DigestState.CACHE_MISS)

        log.info('Generating digest for: %s', entry.title)
        self._trace(fingerprint, DigestState.FETCH_CONTENT)
        content, meta = await self._gather_content(entry)

        self._trace(fingerprint, DigestState.GENERATE_LAYERS)
        try:
            layers = await self.generate_layers(entry.title, content)
        except Exception as exc:  # noqa: BLE001
            log.warning('Digest generation failed for "%s", using degraded layers: %s', entry.title, exc)
            layers = degraded_layers(content)

        digest = Digest(
            fingerprint=fingerprint,
            title=entry.title,
            link=entry.link,
            source_name=entry.source_name,
            published_at=entry.published_at,
            extended_content=meta,
            layers=layers,
        )

        self._trace(fingerprint, DigestState.CACHE_WRITE)
        await self.cache.put(DIGESTS, fingerprint, digest.to_dict())
        self._trace(fingerprint, DigestState.DONE)
        return DigestResult(digest=digest, cached=False)

    async def _lookup(self, fingerprint: str) -> Digest | None:
        payload = await self.cache.get(DIGESTS, fingerprint)
        if payload is None:
            return None
        try:
            return Digest.from_dict(payload)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            log.warning('Cached digest %s is unusable, regenerating: %s', fingerprint, exc)
            return None

    async def _gather_content(self, entry: Entry) -> tuple[str, ExtendedContentMeta]:
        fallback = truncate_text(strip_html(entry.raw_body), self.settings.summary_char_limit)
        if not self.settings.enable_full_article_fetch:
            error = 'Full article fetch is disabled'
        else:
            try:
                extracted = await self.fetch_content(entry.link)
            except Exception as exc:  # noqa: BLE001
                error = str(exc) or exc.__class__.__name__
                log.warning('Article fetch failed for %s: %s (using feed content)', entry.link, error)
            else:
                if not extracted.text:
                    error = 'Extracted article text was empty'
                    return self._fallback_content(entry, fallback, error)
                log.info(
                    'Fetched article: %d words, %d paragraphs',
                    extracted.word_count,
                    len(extracted.paragraphs),
                )
                return extracted.text, ExtendedContentMeta(ok=True, word_count=extracted.word_count)
        return self._fallback_content(entry, fallback, error)

    @staticmethod
    def _fallback_content(entry: Entry, fallback: str, error: str) -> tuple[str, ExtendedContentMeta]:
        if not fallback:
            raise DigestError(f'No content available for "{entry.title}": {error}')
        return fallback, ExtendedContentMeta(ok=False, word_count=word_count(fallback), error=error)

    async def generate_layers(self, title: str, content: str) -> DigestLayers:
        if self.custom_prompt:
            layers = await self._layers_from_custom_prompt(content)
            if layers is not None:
                return layers
            log.info('Falling back to multi-step digest generation...')

        paragraphs = await self._paragraph_digests(content)
        section = await self._section_digest(paragraphs)
        overall = await self._overall_digest(title, content, paragraphs)
        one_line = await self._one_line_digest(title, overall)
        return DigestLayers(paragraphs=tuple(paragraphs), section=section, overall=overall, one_line=one_line)

    async def _layers_from_custom_prompt(self, content: str) -> DigestLayers | None:
        user_prompt = (
            f'{self.custom_prompt}\n\n'
            '## Article to Summarize:\n\n'
            f'{truncate_text(content, 12000)}\n\n'
            'IMPORTANT: Output ONLY the JSON object, no markdown formatting, no code blocks, no additional text.'
        )
        try:
            result = await self.summarizer.generate_json(CUSTOM_PROMPT_SYSTEM, user_prompt)
        except Exception as exc:  # noqa: BLE001
            log.warning('Custom prompt generation failed: %s', exc)
            return None
        if not isinstance(result, dict):
            log.warning('Custom prompt returned %s instead of an object', type(result).__name__)
            return None

        paragraphs = tuple(
            ParagraphDigest(index=index, title=f'Section {index + 1}', summary=str(summary))
            for index, summary in enumerate(result.get('paragraph_summary') or [])
            if summary
        )
        overall = str(result.get('overall_summary') or '') or truncate_text(content, OVERALL_FALLBACK_CHARS)
        one_line = str(result.get('one_line_summary') or '') or truncate_text(overall, ONE_LINE_FALLBACK_CHARS)
        return DigestLayers(paragraphs=paragraphs, section='', overall=overall, one_line=one_line)

    async def _paragraph_digests(self, content: str) -> list[ParagraphDigest]:
        if not content or len(content.strip()) < MIN_CONTENT_FOR_PARAGRAPHS:
            log.info('Content too short for paragraph digest generation')
            return []
        user_prompt = (
            'Analyze this article and break it down into 5-8 key sections or main points. '
            'For each section, provide:\n'
            '1. A brief title (2-4 words)\n'
            '2. A concise 1-2 sentence summary\n\n'
            'Format your response as a JSON array with objects containing "title" and "summary" fields.\n\n'
            f'Article content:\n{truncate_text(content, 8000)}\n\n'
            'Respond ONLY with valid JSON, no additional text.'
        )
        try:
            parsed = await self.summarizer.generate_json(PARAGRAPH_SYSTEM, user_prompt)
        except ResponseDecodeError as exc:
            log.warning('Paragraph reply was not valid JSON, splitting it into points')
            parsed = _points_from_text(exc.response)
        except Exception as exc:  # noqa: BLE001
            log.warning('Failed to generate paragraph digests: %s', exc)
            log.info('Falling back to manual paragraph splitting...')
            return await self._manual_paragraph_digests(content)

        digests: list[ParagraphDigest] = []
        for row in _paragraph_rows(parsed):
            if not isinstance(row, dict):
                continue
            summary = row.get('summary') or row.get('content')
            if not summary:
                continue
            index = len(digests)
            digests.append(
                ParagraphDigest(index=index, title=str(row.get('title') or f'Section {index + 1}'), summary=str(summary))
            )
            if len(digests) >= MAX_PARAGRAPH_DIGESTS:
                break
        log.info('AI identified %d key sections', len(digests))
        return digests

    async def _manual_paragraph_digests(self, content: str) -> list[ParagraphDigest]:
        groups = group_sentences(content, max_sentences=MANUAL_MAX_SENTENCES)[:MANUAL_MAX_SECTIONS]
        log.info('Summarizing %d manual sections...', len(groups))
        digests: list[ParagraphDigest] = []
        for position, group in enumerate(groups):
            user_prompt = f'Summarize in 1-2 sentences:\n\n{truncate_text(group, 800)}'
            try:
                summary = await self.summarizer.generate(MANUAL_SYSTEM, user_prompt)
            except Exception as exc:  # noqa: BLE001
                log.warning('Manual section %d/%d failed: %s', position + 1, len(groups), exc)
                continue
            index = len(digests)
            digests.append(
                ParagraphDigest(
                    index=index,
                    title=f'Section {index + 1}',
                    summary=summary or truncate_text(group, MANUAL_FALLBACK_CHARS),
                )
            )
        return digests

    async def _section_digest(self, paragraphs: list[ParagraphDigest]) -> str:
        if not paragraphs:
            return ''
        combined = '\n\n'.join(p.summary for p in paragraphs)
        user_prompt = (
            'Based on these paragraph summaries, identify 2-3 main sections or themes '
            f'and provide a brief summary for each:\n\n{combined}'
        )
        try:
            section = await self.summarizer.generate(SECTION_SYSTEM, user_prompt)
        except Exception as exc:  # noqa: BLE001
            log.warning('Failed to generate section digest: %s', exc)
            section = ''
        return section or ' '.join(p.summary for p in paragraphs[:3])

    async def _overall_digest(self, title: str, content: str, paragraphs: list[ParagraphDigest]) -> str:
        if paragraphs:
            context = '\n'.join(p.summary for p in paragraphs)
        else:
            context = truncate_text(content, 2000)
        user_prompt = (
            'Write a comprehensive summary (3-5 sentences) of this article:\n\n'
            f'Title: {title}\n\nContent:\n{context}'
        )
        try:
            overall = await self.summarizer.generate(OVERALL_SYSTEM, user_prompt)
        except Exception as exc:  # noqa: BLE001
            log.warning('Failed to generate overall digest: %s', exc)
            overall = ''
        return overall or truncate_text(content, OVERALL_FALLBACK_CHARS)

    async def _one_line_digest(self, title: str, overall: str) -> str:
        user_prompt = (
            'Create a single sentence summary (max 20 words) of this article:\n\n'
            f'Title: {title}\n\nSummary: {overall}'
        )
        try:
            one_line = await self.summarizer.generate(ONE_LINE_SYSTEM, user_prompt)
        except Exception as exc:  # noqa: BLE001
            log.warning('Failed to generate one-line digest: %s', exc)
            one_line = ''
        return one_line or truncate_text(overall, ONE_LINE_FALLBACK_CHARS)
