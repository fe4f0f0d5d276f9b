"""Key naming strategies and key statistics."""
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from forge_i18n.ai_key_generator import AIKeyCache, AIKeyGenerator, build_safe_fallback_key
from forge_i18n.app_config import AppConfig
from forge_i18n.errors import KeyGenerationError
from forge_i18n.naming import (
    detect_file_kind,
    extract_context_info,
    generate_semantic_key,
    infer_namespace,
    text_hash,
)

logger = logging.getLogger(__name__)


@dataclass
class FileContext:
    """What is known about the file a text was found in."""
    file_path: str
    file_kind: str
    namespace: str
    area: Optional[str] = None
    component_name: Optional[str] = None


@dataclass
class KeyRequest:
    text: str
    text_type: str
    context: FileContext

    def ai_context(self) -> Dict[str, Any]:
        context = {
            'filePath': self.context.file_path,
            'fileType': self.context.file_kind,
            'textType': self.text_type,
        }
        if self.context.component_name:
            context['componentName'] = self.context.component_name
        return context


def describe_file(file_path: str) -> FileContext:
    info = extract_context_info(file_path)
    return FileContext(
        file_path=file_path.replace('\\', '/'),
        file_kind=detect_file_kind(file_path),
        namespace=infer_namespace(file_path),
        area=info.get('area'),
        component_name=info.get('component_name'),
    )


class KeyGenerator:
    """
    Turns texts into keys according to the configured strategy.

    ``semantic`` keys read ``<namespace>.<type>.<semantic>_<hash>``, ``hash``
    keys ``<namespace>.<hash>``. The ``ai`` strategy asks the model for a
    camelCase name (``<namespace>.<name>``) and, when allowed, falls back to a
    sanitised semantic key for texts the model could not name.
    """

    def __init__(self, config: AppConfig, ai_generator: Optional[AIKeyGenerator] = None):
        self.config = config
        self.ai_generator = ai_generator

    @classmethod
    def from_config(cls, config: AppConfig) -> 'KeyGenerator':
        ai_generator = None
        if config.use_ai and config.openai_client is not None:
            cache = AIKeyCache(config.ai_cache_file_path, config.ai_cache_ttl_days, config.ai_cache_enabled)
            ai_generator = AIKeyGenerator(
                client=config.openai_client,
                model_name=config.model_name,
                cache=cache,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                requests_per_minute=config.requests_per_minute,
                max_retries=config.max_retries,
                max_prompt_tokens=config.ai_max_prompt_tokens,
            )
        return cls(config, ai_generator)

    def generate_key(self, text: str, namespace: str) -> str:
        """Key for ``text`` using the non-AI strategies."""
        strategy = self.config.key_strategy
        if strategy == 'hash':
            return f"{namespace}.{text_hash(text, self.config.hash_length)}"
        if strategy in ('semantic', 'ai'):
            semantic = generate_semantic_key(text, self.config.hash_length, self.config.max_semantic_length,
                                             self.config.use_type_prefix)
            return f"{namespace}.{semantic}"
        raise KeyGenerationError(f"Unknown key generation strategy: {strategy}")

    def fallback_key(self, text: str, namespace: str) -> str:
        return f"{namespace}.{build_safe_fallback_key(text, self.config.hash_length, self.config.max_semantic_length)}"

    async def assign_keys(self, requests: List[KeyRequest]) -> List[Optional[str]]:
        """
        Propose one key per request, in order.

        Returns:
            The keys; None for a text that got no AI name while the semantic
            fallback is disabled.
        """
        if not requests:
            return []
        if not self.config.use_ai or self.ai_generator is None:
            return [self.generate_key(request.text, request.context.namespace) for request in requests]

        keys: List[Optional[str]] = []
        batch_size = max(1, self.config.ai_batch_size)
        for start in range(0, len(requests), batch_size):
            batch = requests[start:start + batch_size]
            names = await self.ai_generator.generate_batch([(r.text, r.ai_context()) for r in batch])
            for request, name in zip(batch, names):
                namespace = request.context.namespace
                if name:
                    keys.append(f"{namespace}.{name}")
                elif self.config.ai_fallback_to_semantic:
                    keys.append(self.fallback_key(request.text, namespace))
                else:
                    logger.error("No AI key for '%s' in %s and fallback is disabled",
                                 request.text, request.context.file_path)
                    keys.append(None)
        return keys


def generate_key_report(keys: Iterable[str]) -> Dict[str, Any]:
    """
    Summarize a set of keys.

    Args:
        keys: Dotted keys such as ``common.action.保存_1a2b``.

    Returns:
        A dictionary with ``total``, ``byContext`` (first segment), ``byType``
        (second segment, up to any ``_``), ``avgKeyLength``, ``longestKey``
        and ``shortestKey``.
    """
    keys = list(keys)
    by_context: Counter = Counter()
    by_type: Counter = Counter()
    for key in keys:
        segments = key.split('.')
        by_context[segments[0]] += 1
        if len(segments) > 1:
            by_type[segments[1].split('_')[0]] += 1

    return {
        'total': len(keys),
        'byContext': dict(by_context),
        'byType': dict(by_type),
        'avgKeyLength': round(sum(len(k) for k in keys) / len(keys)) if keys else 0,
        'longestKey': max(keys, key=len) if keys else '',
        'shortestKey': min(keys, key=len) if keys else '',
    }
