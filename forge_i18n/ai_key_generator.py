"""
AI-assisted key naming.

Texts are sent to an OpenAI-compatible chat endpoint in batches; the model
answers with one camelCase name per text. Names are sanitised before use and
remembered in a JSON cache file so repeated runs do not ask again.
"""
import asyncio
import json
import logging
import os
import random
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import jsonschema
import tiktoken
from aiolimiter import AsyncLimiter
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    OpenAIError,
    RateLimitError,
)
from openai.types.chat import (
    ChatCompletionSystemMessageParam,
    ChatCompletionUserMessageParam
)

from forge_i18n.naming import generate_semantic_key, text_hash

logger = logging.getLogger(__name__)

AI_KEY_PATTERN = re.compile(r'^[a-z][a-zA-Z0-9]*(?:_[a-zA-Z0-9]+)*$')
AI_KEY_MIN_LENGTH = 3
AI_KEY_MAX_LENGTH = 60

# The model must answer {"keys": [...]} with one entry per requested text.
KEY_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "keys": {
            "type": "array",
            "items": {"type": ["string", "null"]}
        }
    },
    "required": ["keys"]
}

SYSTEM_PROMPT = """You are an expert in naming i18n message keys.
You will receive a JSON list of Chinese UI texts, each with some context about where it appears.
For every text, produce a short, semantic English key.

Rules:
1. Keys are English camelCase identifiers.
2. Use 3 to 6 words.
3. The key must reflect the core meaning of the text; use the context to make it specific.
4. Use the usual verbs for common actions: confirm, delete, save, cancel, submit, edit.
5. Answer with a JSON object {"keys": [...]} holding exactly one key per input text, in the same order.

Example:
Input: ["确认删除吗？", "保存成功", "请输入用户名"]
Output: {"keys": ["confirmDelete", "saveSuccess", "inputUsername"]}"""

_QUOTES_RE = re.compile(r'[`\'"“”‘’]')
_BRACKETS_RE = re.compile(r'\{\{|\}\}|[\[\]()]')
_CAMEL_BOUNDARY_RE = re.compile(r'([a-z])([A-Z])')
_SEGMENT_SPLIT_RE = re.compile(r'[^a-zA-Z0-9]+')
_LEADING_NON_LETTERS_RE = re.compile(r'^[^a-zA-Z]+')


def sanitize_ai_key(raw_key: Any) -> str:
    """Coerce whatever the model answered into a camelCase identifier, or '' if nothing usable is left."""
    if not isinstance(raw_key, str):
        return ''
    key = raw_key.strip()
    if not key:
        return ''

    key = _QUOTES_RE.sub('', key)
    key = _BRACKETS_RE.sub(' ', key)
    key = _CAMEL_BOUNDARY_RE.sub(r'\1 \2', key)
    segments = [segment for segment in _SEGMENT_SPLIT_RE.split(key) if segment]
    if not segments:
        return ''

    words = [segment.lower() for segment in segments]
    joined = words[0] + ''.join(word[:1].upper() + word[1:] for word in words[1:])
    normalized = _LEADING_NON_LETTERS_RE.sub('', joined)
    if not normalized:
        return ''
    return normalized[:1].lower() + normalized[1:]


def is_valid_ai_key(key: str) -> bool:
    return (
        isinstance(key, str)
        and AI_KEY_MIN_LENGTH <= len(key) <= AI_KEY_MAX_LENGTH
        and AI_KEY_PATTERN.match(key) is not None
    )


def normalize_ai_key(raw_key: Any) -> Tuple[str, bool]:
    sanitized = sanitize_ai_key(raw_key)
    return sanitized, is_valid_ai_key(sanitized)


def build_safe_fallback_key(text: str, hash_length: int, max_semantic_length: int) -> str:
    """
    Key used when the model gives no usable answer.

    The semantic key is run through the same sanitiser as AI answers; since
    its Han part is dropped that mostly leaves ``<type><Hash>``. If even that
    is not a valid key, ``auto<hash>`` is used.
    """
    fallback = generate_semantic_key(text, hash_length, max_semantic_length, True)
    sanitized, valid = normalize_ai_key(fallback)
    if valid:
        return sanitized
    return f"auto{text_hash(text, hash_length)}"


def count_tokens(text: str, model_name: str = 'gpt-3.5-turbo') -> int:
    """Count the number of tokens in ``text`` for ``model_name``.

    ``tiktoken.encoding_for_model`` raises for model names it does not know
    (every non-OpenAI provider) and may try to download model data. The
    ``gpt2`` encoding that ships with ``tiktoken`` is the fallback; a
    whitespace split is the last resort.
    """
    try:
        encoding = tiktoken.encoding_for_model(model_name)
    except Exception:
        try:
            encoding = tiktoken.get_encoding("gpt2")
        except Exception:
            return len(text.split())

    try:
        return len(encoding.encode(text))
    except Exception:
        return len(text.split())


@dataclass
class CacheEntry:
    key: str
    timestamp: float


class AIKeyCache:
    """
    JSON file cache of AI-generated keys.

    Entries are keyed by the text plus its serialized context and expire
    after ``ttl_days`` days; a TTL of 0 keeps them forever.
    """

    def __init__(self, file_path: Optional[str], ttl_days: float = 30, enabled: bool = True):
        self.file_path = file_path
        self.ttl_days = ttl_days
        self.enabled = enabled and bool(file_path)
        self._entries: Optional[Dict[str, CacheEntry]] = None
        self._dirty = False

    @staticmethod
    def cache_key(text: str, context: Dict[str, Any]) -> str:
        return f"{text}|{json.dumps(context, ensure_ascii=False, sort_keys=True)}"

    def _load(self) -> Dict[str, CacheEntry]:
        if self._entries is not None:
            return self._entries
        self._entries = {}
        if not self.enabled or not os.path.exists(self.file_path):
            return self._entries
        try:
            with open(self.file_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to load AI key cache %s: %s", self.file_path, e)
            return self._entries
        if not isinstance(data, dict):
            logger.warning("Ignoring AI key cache %s: not a JSON object", self.file_path)
            return self._entries

        now = time.time()
        ttl_seconds = self.ttl_days * 24 * 60 * 60
        for cache_key, value in data.items():
            if isinstance(value, dict) and 'key' in value:
                timestamp = float(value.get('timestamp') or 0) / 1000
                if self.ttl_days and now - timestamp >= ttl_seconds:
                    continue
                self._entries[cache_key] = CacheEntry(str(value['key']), timestamp)
            else:
                # Bare string values predate timestamps; treat them as fresh.
                self._entries[cache_key] = CacheEntry(str(value), now)
        return self._entries

    def get(self, text: str, context: Dict[str, Any]) -> Optional[str]:
        entry = self._load().get(self.cache_key(text, context))
        if entry is None:
            return None
        sanitized, valid = normalize_ai_key(entry.key)
        if not valid:
            logger.warning("Ignoring invalid cached key '%s'", entry.key)
            return None
        if sanitized != entry.key:
            logger.warning("Normalized cached key '%s' to '%s'", entry.key, sanitized)
        return sanitized

    def set(self, text: str, context: Dict[str, Any], key: str) -> None:
        sanitized, valid = normalize_ai_key(key)
        if not valid:
            logger.warning("Not caching invalid key '%s'", key)
            return
        self._load()[self.cache_key(text, context)] = CacheEntry(sanitized, time.time())
        self._dirty = True

    def save(self) -> None:
        if not self.enabled or not self._dirty:
            return
        directory = os.path.dirname(self.file_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        # Timestamps are stored in milliseconds.
        data = {
            cache_key: {'key': entry.key, 'timestamp': int(entry.timestamp * 1000)}
            for cache_key, entry in self._load().items()
        }
        try:
            with open(self.file_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
        except OSError as e:
            logger.warning("Failed to save AI key cache %s: %s", self.file_path, e)
            return
        self._dirty = False


async def _handle_retry(attempt: int, max_retries: int, base_delay: float, label: str,
                        api_exc: Optional[Exception] = None) -> bool:
    """
    Handle the retry mechanism with exponential backoff and jitter.

    Args:
        attempt (int): The current attempt number.
        max_retries (int): The maximum number of retry attempts.
        base_delay (float): The base delay in seconds.
        label (str): What is being requested, for the log.
        api_exc (Optional[Exception]): The exception object from the API, if available.

    Returns:
        bool: True if the operation should retry, False otherwise.
    """
    if attempt >= max_retries:
        logger.error("Key naming request for %s failed after %d attempts.", label, max_retries)
        return False

    delay = None
    if isinstance(api_exc, OpenAIError):
        response = getattr(api_exc, 'response', None)
        headers = getattr(response, 'headers', None) or {}
        retry_after_header = headers.get("Retry-After") if hasattr(headers, 'get') else None
        if retry_after_header:
            if retry_after_header.isdigit():
                delay = float(retry_after_header)
            elif retry_after_header.endswith("ms") and retry_after_header[:-2].isdigit():
                delay = float(retry_after_header[:-2]) / 1000
    if delay is None:
        delay = base_delay * (2 ** (attempt - 1)) + random.uniform(0, 1)
    logger.info("Retrying key naming request in %.2f seconds (Attempt %d/%d)", delay, attempt, max_retries)
    await asyncio.sleep(delay)
    return True


class AIKeyGenerator:
    """
    Names texts through an OpenAI-compatible chat completion endpoint.

    Args:
        client: The async client; its base URL selects the provider.
        model_name: Chat model to use.
        cache: Cache of earlier answers.
        temperature: Sampling temperature.
        max_tokens: Completion token limit per request.
        requests_per_minute: Rate limit shared by all requests of this generator.
        max_retries: Attempts per request before giving up.
        max_prompt_tokens: Prompt size above which a batch is split.
        base_delay: First backoff delay in seconds.
    """

    def __init__(self, client: AsyncOpenAI, model_name: str, cache: AIKeyCache,
                 temperature: float = 0.3, max_tokens: int = 2000, requests_per_minute: float = 20,
                 max_retries: int = 3, max_prompt_tokens: int = 3000, base_delay: float = 1.0):
        self.client = client
        self.model_name = model_name
        self.cache = cache
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_retries = max_retries
        self.max_prompt_tokens = max_prompt_tokens
        self.base_delay = base_delay
        self.rate_limiter = AsyncLimiter(max_rate=requests_per_minute, time_period=60)

    async def generate_batch(self, items: Sequence[Tuple[str, Dict[str, Any]]]) -> List[Optional[str]]:
        """
        Name every ``(text, context)`` item.

        Returns:
            One sanitised key per item, or None where neither the cache nor the
            model produced a valid one.
        """
        results: List[Optional[str]] = [None] * len(items)
        uncached: List[Tuple[int, str, Dict[str, Any]]] = []
        for index, (text, context) in enumerate(items):
            cached = self.cache.get(text, context)
            if cached:
                results[index] = cached
            else:
                uncached.append((index, text, context))

        if uncached:
            logger.debug("%d of %d text(s) need an AI key", len(uncached), len(items))
        for chunk in self._split_by_prompt_size(uncached):
            answers = await self._request_keys([(text, context) for _, text, context in chunk])
            for (index, text, context), answer in zip(chunk, answers):
                sanitized, valid = normalize_ai_key(answer)
                if not valid:
                    logger.warning("AI returned no usable key for '%s' (got %r)", text, answer)
                    continue
                results[index] = sanitized
                self.cache.set(text, context, sanitized)

        self.cache.save()
        return results

    def build_user_prompt(self, items: Sequence[Tuple[str, Dict[str, Any]]]) -> str:
        payload = [{'text': text, 'context': context} for text, context in items]
        return (
            "Generate one key per text below. Return exactly as many keys as there are texts, in order.\n"
            f"{json.dumps(payload, ensure_ascii=False, indent=2)}"
        )

    def _split_by_prompt_size(self, items: List[Tuple[int, str, Dict[str, Any]]]):
        chunk: List[Tuple[int, str, Dict[str, Any]]] = []
        for item in items:
            candidate = chunk + [item]
            prompt = self.build_user_prompt([(text, context) for _, text, context in candidate])
            if chunk and count_tokens(prompt, self.model_name) > self.max_prompt_tokens:
                yield chunk
                chunk = [item]
            else:
                chunk = candidate
        if chunk:
            yield chunk

    async def _request_keys(self, items: List[Tuple[str, Dict[str, Any]]]) -> List[Optional[str]]:
        """Ask the model for one key per item; all None once the retries are used up."""
        user_prompt = self.build_user_prompt(items)
        label = f"{len(items)} text(s)"
        response_text = ''
        for attempt in range(1, self.max_retries + 1):
            try:
                async with self.rate_limiter:
                    response = await self.client.chat.completions.create(
                        model=self.model_name,
                        messages=[
                            ChatCompletionSystemMessageParam(role="system", content=SYSTEM_PROMPT),
                            ChatCompletionUserMessageParam(role="user", content=user_prompt),
                        ],
                        temperature=self.temperature,
                        max_tokens=self.max_tokens,
                        response_format={"type": "json_object"},
                        timeout=60.0,
                    )
                response_text = (response.choices[0].message.content or '').strip()
                parsed_json = json.loads(response_text)
                jsonschema.validate(instance=parsed_json, schema=KEY_RESPONSE_SCHEMA)
                keys = parsed_json['keys']
                if len(keys) != len(items):
                    logger.warning("AI returned %d key(s) for %d text(s); unmatched texts fall back",
                                   len(keys), len(items))
                return (keys + [None] * len(items))[:len(items)]

            except json.JSONDecodeError as json_exc:
                logger.error("Key naming failed: AI did not return valid JSON. Error: %s", json_exc)
                logger.debug("Invalid AI response (JSON Decode Error):\n---\n%s\n---", response_text)
            except jsonschema.ValidationError as schema_exc:
                logger.error("Key naming failed: AI response did not match the required schema. Error: %s",
                             schema_exc.message)
                logger.debug("Invalid AI response (Schema Error):\n---\n%s\n---", response_text)
            except (RateLimitError, APITimeoutError, APIConnectionError, APIStatusError, OpenAIError) as api_exc:
                logger.warning("API error during key naming: %s", api_exc)
                if not await _handle_retry(attempt, self.max_retries, self.base_delay, label, api_exc):
                    return [None] * len(items)
                continue
            except Exception as e:
                logger.error("Unexpected error during key naming: %s", e, exc_info=True)
                return [None] * len(items)

            # JSON or schema problems: ask again.
            if not await _handle_retry(attempt, self.max_retries, self.base_delay, f"{label} (validation)"):
                return [None] * len(items)

        return [None] * len(items)
