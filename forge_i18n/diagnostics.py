"""Per-file counters and diagnostic samples collected while transforming a file."""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Set, Tuple

# Sample node kinds as they appear in reports.
STRING_LITERAL = 'string-literal'
TEMPLATE_LITERAL = 'template-literal'
JSX_TEXT = 'jsx-text'

DATA_FILE_SKIP = 'data-file-skip'
POST_TRANSFORM_SCAN = 'postTransformScan'


def skip_function_reason(name: str) -> str:
    return f"skipFunctionCall:{name}"


@dataclass
class Sample:
    text: str
    node_kind: str
    reason: str
    line: int
    column: int


@dataclass
class DeferredBinding:
    """A module-level binding that now evaluates a lookup call at import time."""
    name: str
    key: str
    file: str
    line: int
    column: int


@dataclass
class FileStats:
    """Counters and samples for one file; merged into the run report afterwards."""
    extracted: int = 0
    reused_keys: int = 0
    lazy_accessors: int = 0
    interpolations: int = 0
    deferred_bindings: List[DeferredBinding] = field(default_factory=list)
    unrecognized_samples: List[Sample] = field(default_factory=list)
    missing_samples: List[Sample] = field(default_factory=list)
    _seen: Set[Tuple[str, int, int, str]] = field(default_factory=set, repr=False)

    def record_unrecognized(self, text: str, node_kind: str, reason: str, line: int, column: int) -> None:
        if self._remember(node_kind, line, column, text):
            self.unrecognized_samples.append(Sample(text, node_kind, reason, line, column))

    def record_missing(self, text: str, node_kind: str, line: int, column: int,
                       reason: str = POST_TRANSFORM_SCAN) -> None:
        if self._remember(node_kind, line, column, text):
            self.missing_samples.append(Sample(text, node_kind, reason, line, column))

    def record_deferred_binding(self, binding: DeferredBinding) -> None:
        self.deferred_bindings.append(binding)

    def _remember(self, node_kind: str, line: int, column: int, text: str) -> bool:
        sample_key = (node_kind, line, column, text)
        if sample_key in self._seen:
            return False
        self._seen.add(sample_key)
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'extracted': self.extracted,
            'reusedKeys': self.reused_keys,
            'lazyAccessors': self.lazy_accessors,
            'interpolations': self.interpolations,
            'deferredBindings': [asdict(b) for b in self.deferred_bindings],
            'unrecognizedSamples': [asdict(s) for s in self.unrecognized_samples],
            'missingSamples': [asdict(s) for s in self.missing_samples],
        }
