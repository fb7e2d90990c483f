##########################################################################################
#
# Script name: summarizer.py
#
# Description: OpenAI chat-completion client behind the backoff executor, with JSON
#              recovery for free-text replies.
#
##########################################################################################

import json
import logging
import re
from pathlib import Path
from typing import Any

from openai import AsyncOpenAI

from .backoff import BackoffPolicy, log_retry, run_with_backoff
from .config import Settings
from .errors import ResponseDecodeError


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2000

FENCED_BLOCK = re.compile(r'```(?:json)?\s*([\s\S]*?)```')
OBJECT_PATTERN = re.compile(r'\{[\s\S]*\}')
ARRAY_PATTERN = re.compile(r'\[[\s\S]*\]')


# ****************************************************************************************
# Functions
# ****************************************************************************************


def extract_json(response: str) -> Any | None:
    '''
    Recover a JSON value from a model reply: the whole reply, then a fenced
    code block, then the outermost object or array found in the text.
    '''
    if not response or not response.strip():
        return None
    candidates = [response.strip()]
    fenced = FENCED_BLOCK.search(response)
    if fenced:
        candidates.append(fenced.group(1).strip())
    for pattern in (OBJECT_PATTERN, ARRAY_PATTERN):
        match = pattern.search(response)
        if match:
            candidates.append(match.group(0))
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    return None


def load_custom_prompt(path: str | Path) -> str | None:
    prompt_path = Path(path)
    if not prompt_path.exists():
        return None
    try:
        content = prompt_path.read_text(encoding='utf-8').strip()
    except OSError as exc:
        log.warning('Failed reading summary prompt file %s: %s', prompt_path, exc)
        return None
    if content:
        log.info('Loaded custom summary prompt from %s', prompt_path)
    return content or None


# ****************************************************************************************
# Classes
# ****************************************************************************************


class Summarizer:
    def __init__(
        self,
        settings: Settings,
        client: AsyncOpenAI | None = None,
        policy: BackoffPolicy | None = None,
    ):
        self.model = settings.openai_model
        self.client = client or AsyncOpenAI(api_key=settings.openai_api_key, base_url=settings.openai_base_url)
        self.policy = policy or BackoffPolicy.from_settings(settings, on_retry=log_retry('OpenAI API'))

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        async def _call():
            return await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {'role': 'system', 'content': system_prompt},
                    {'role': 'user', 'content': user_prompt},
                ],
                temperature=DEFAULT_TEMPERATURE,
                max_tokens=DEFAULT_MAX_TOKENS,
            )

        response = await run_with_backoff(_call, self.policy)
        if not response.choices:
            return ''
        content = response.choices[0].message.content
        return (content or '').strip()

    async def generate_json(self, system_prompt: str, user_prompt: str) -> Any:
        text = await self.generate(system_prompt, user_prompt)
        parsed = extract_json(text)
        if parsed is None:
            raise ResponseDecodeError(text)
        return parsed
