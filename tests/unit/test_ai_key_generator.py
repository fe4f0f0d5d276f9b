"""Unit tests for AI key naming: sanitising, caching and the request loop."""
import hashlib
import json
import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from openai import OpenAIError

from forge_i18n.ai_key_generator import (
    AIKeyCache,
    AIKeyGenerator,
    _handle_retry,
    build_safe_fallback_key,
    is_valid_ai_key,
    sanitize_ai_key,
)

CONTEXT = {"filePath": "src/pages/home/index.tsx", "fileType": "component", "textType": "action"}


def _response(payload):
    content = payload if isinstance(payload, str) else json.dumps(payload)
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _client(*responses):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=list(responses))
    return client


@pytest.fixture(autouse=True)
def whitespace_tokens():
    """Keep token counting offline."""
    with patch('forge_i18n.ai_key_generator.count_tokens', side_effect=lambda text, model: len(text.split())):
        yield


@pytest.fixture
def cache(tmp_path):
    return AIKeyCache(str(tmp_path / "cache" / "keys.json"), ttl_days=30)


class TestSanitizing:

    @pytest.mark.parametrize("raw,expected", [
        ("saveSuccess", "saveSuccess"),
        ("confirm_delete", "confirmDelete"),
        ('"SubmitForm"', "submitForm"),
        ("user ID", "userId"),
        ("  {{deleteItem}} ", "deleteItem"),
        ("123abc", "abc"),
        ("保存", ""),
        (None, ""),
        (42, ""),
    ])
    def test_sanitize(self, raw, expected):
        assert sanitize_ai_key(raw) == expected

    @pytest.mark.parametrize("key,expected", [
        ("saveSuccess", True),
        ("ab", False),
        ("Save", False),
        ("a" * 61, False),
        ("save-success", False),
    ])
    def test_validity(self, key, expected):
        assert is_valid_ai_key(key) is expected

    def test_fallback_key_keeps_type_and_hash(self):
        digest = hashlib.md5("保存".encode("utf-8")).hexdigest()[:4]
        expected = "action" + digest[:1].upper() + digest[1:]
        assert build_safe_fallback_key("保存", 4, 20) == expected
        assert is_valid_ai_key(expected)


class TestAIKeyCache:

    def test_set_and_save_round_trip(self, cache):
        cache.set("保存", CONTEXT, "saveButton")
        cache.save()

        with open(cache.file_path, encoding="utf-8") as f:
            stored = json.load(f)
        entry = stored[AIKeyCache.cache_key("保存", CONTEXT)]
        assert entry["key"] == "saveButton"
        assert entry["timestamp"] > 1_000_000_000_000

        reloaded = AIKeyCache(cache.file_path, ttl_days=30)
        assert reloaded.get("保存", CONTEXT) == "saveButton"

    def test_cache_key_ignores_context_order(self):
        reordered = dict(reversed(list(CONTEXT.items())))
        assert AIKeyCache.cache_key("保存", CONTEXT) == AIKeyCache.cache_key("保存", reordered)

    def _write(self, path, age_days):
        timestamp = int((time.time() - age_days * 86400) * 1000)
        with open(path, "w", encoding="utf-8") as f:
            json.dump({AIKeyCache.cache_key("保存", CONTEXT): {"key": "saveButton", "timestamp": timestamp}}, f)

    def test_expired_entries_are_dropped(self, tmp_path):
        path = str(tmp_path / "keys.json")
        self._write(path, age_days=31)
        assert AIKeyCache(path, ttl_days=30).get("保存", CONTEXT) is None

    def test_zero_ttl_never_expires(self, tmp_path):
        path = str(tmp_path / "keys.json")
        self._write(path, age_days=400)
        assert AIKeyCache(path, ttl_days=0).get("保存", CONTEXT) == "saveButton"

    def test_invalid_keys_are_not_cached(self, cache, tmp_path):
        cache.set("保存", CONTEXT, "保存")
        assert cache.get("保存", CONTEXT) is None
        cache.save()
        assert not (tmp_path / "cache" / "keys.json").exists()

    def test_corrupt_file_is_ignored(self, tmp_path):
        path = tmp_path / "keys.json"
        path.write_text("{not json", encoding="utf-8")
        assert AIKeyCache(str(path)).get("保存", CONTEXT) is None

    def test_disabled_cache_writes_nothing(self, tmp_path):
        path = tmp_path / "keys.json"
        disabled = AIKeyCache(str(path), enabled=False)
        disabled.set("保存", CONTEXT, "saveButton")
        disabled.save()
        assert not path.exists()


class TestHandleRetry:

    @pytest.mark.asyncio
    async def test_gives_up_after_last_attempt(self):
        with patch('forge_i18n.ai_key_generator.asyncio.sleep', new_callable=AsyncMock) as mock_sleep:
            assert await _handle_retry(3, 3, 1.0, "batch") is False
        mock_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_honors_retry_after_header(self):
        api_exc = OpenAIError("rate limited")
        api_exc.response = SimpleNamespace(headers={"Retry-After": "2"})
        with patch('forge_i18n.ai_key_generator.asyncio.sleep', new_callable=AsyncMock) as mock_sleep:
            assert await _handle_retry(1, 3, 1.0, "batch", api_exc) is True
        mock_sleep.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_exponential_backoff(self):
        with patch('forge_i18n.ai_key_generator.asyncio.sleep', new_callable=AsyncMock) as mock_sleep:
            with patch('forge_i18n.ai_key_generator.random.uniform', return_value=0.5):
                await _handle_retry(2, 3, 1.0, "batch")
        mock_sleep.assert_awaited_once_with(2.5)


class TestGenerateBatch:

    def _generator(self, client, cache, **kwargs):
        return AIKeyGenerator(client=client, model_name="deepseek-chat", cache=cache, max_retries=2, **kwargs)

    @pytest.mark.asyncio
    async def test_keys_are_sanitised_and_cached(self, cache):
        client = _client(_response({"keys": ["save_button", "confirmDelete"]}))
        generator = self._generator(client, cache)

        keys = await generator.generate_batch([("保存", CONTEXT), ("确认删除吗", CONTEXT)])

        assert keys == ["saveButton", "confirmDelete"]
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "deepseek-chat"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert "确认删除吗" in kwargs["messages"][1]["content"]
        assert AIKeyCache(cache.file_path).get("保存", CONTEXT) == "saveButton"

    @pytest.mark.asyncio
    async def test_cached_texts_are_not_requested(self, cache):
        cache.set("保存", CONTEXT, "saveButton")
        client = _client()
        generator = self._generator(client, cache)

        assert await generator.generate_batch([("保存", CONTEXT)]) == ["saveButton"]
        client.chat.completions.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_json_is_retried(self, cache):
        client = _client(_response("not json"), _response({"keys": ["saveButton"]}))
        generator = self._generator(client, cache)

        with patch('forge_i18n.ai_key_generator.asyncio.sleep', new_callable=AsyncMock):
            keys = await generator.generate_batch([("保存", CONTEXT)])

        assert keys == ["saveButton"]
        assert client.chat.completions.create.await_count == 2

    @pytest.mark.asyncio
    async def test_schema_violation_exhausts_retries(self, cache):
        client = _client(_response({"names": []}), _response({"names": []}))
        generator = self._generator(client, cache)

        with patch('forge_i18n.ai_key_generator.asyncio.sleep', new_callable=AsyncMock):
            keys = await generator.generate_batch([("保存", CONTEXT)])

        assert keys == [None]
        assert client.chat.completions.create.await_count == 2

    @pytest.mark.asyncio
    async def test_api_errors_yield_no_keys(self, cache):
        client = _client(OpenAIError("down"), OpenAIError("still down"))
        generator = self._generator(client, cache)

        with patch('forge_i18n.ai_key_generator.asyncio.sleep', new_callable=AsyncMock):
            keys = await generator.generate_batch([("保存", CONTEXT), ("取消", CONTEXT)])

        assert keys == [None, None]
        assert client.chat.completions.create.await_count == 2

    @pytest.mark.asyncio
    async def test_short_answer_leaves_rest_unnamed(self, cache):
        client = _client(_response({"keys": ["saveButton"]}))
        generator = self._generator(client, cache)

        keys = await generator.generate_batch([("保存", CONTEXT), ("取消", CONTEXT)])

        assert keys == ["saveButton", None]

    @pytest.mark.asyncio
    async def test_unusable_answers_are_dropped(self, cache):
        client = _client(_response({"keys": ["保存", None]}))
        generator = self._generator(client, cache)

        assert await generator.generate_batch([("保存", CONTEXT), ("取消", CONTEXT)]) == [None, None]

    @pytest.mark.asyncio
    async def test_large_batches_are_split_by_prompt_size(self, cache):
        def fake_count(text, model):
            return 5000 if text.count('"text"') > 1 else 10

        client = _client(*[_response({"keys": ["namedText"]}) for _ in range(3)])
        generator = self._generator(client, cache)

        with patch('forge_i18n.ai_key_generator.count_tokens', side_effect=fake_count):
            keys = await generator.generate_batch([("保存", CONTEXT), ("取消", CONTEXT), ("删除", CONTEXT)])

        assert keys == ["namedText"] * 3
        assert client.chat.completions.create.await_count == 3
