"""Run-wide table of extracted texts keyed by their lookup keys."""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

Signature = Tuple[str, Tuple[str, ...]]


def dedup_signature(text: str, interpolations: Iterable[str]) -> Signature:
    """Two sites are the same message iff their text and sorted variable names match."""
    return text, tuple(sorted(interpolations))


@dataclass
class TranslationEntry:
    text: str
    source_file: str
    interpolations: List[str] = field(default_factory=list)

    @property
    def signature(self) -> Signature:
        return dedup_signature(self.text, self.interpolations)


@dataclass
class KeyCollision:
    key: str
    texts: List[str]
    resolved_key: str


class TranslationTable:
    """
    Mapping of key to TranslationEntry, owned by one extraction run.

    Files are processed one after another and each transformation receives
    this object explicitly. A key is never shared by two different texts: a
    colliding key is re-keyed with a numeric suffix and the collision is kept
    for the run report.
    """

    def __init__(self, entries: Optional[Dict[str, TranslationEntry]] = None):
        self._entries: Dict[str, TranslationEntry] = {}
        self._by_signature: Dict[Signature, str] = {}
        self.collisions: List[KeyCollision] = []
        for key, entry in (entries or {}).items():
            self.add(key, entry)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __iter__(self):
        return iter(self._entries)

    def get(self, key: str) -> Optional[TranslationEntry]:
        return self._entries.get(key)

    def items(self):
        return self._entries.items()

    def find_key(self, text: str, interpolations: Iterable[str] = ()) -> Optional[str]:
        return self._by_signature.get(dedup_signature(text, interpolations))

    def add(self, key: str, entry: TranslationEntry) -> str:
        """
        Insert ``entry`` under ``key`` and return the key actually used.

        Args:
            key: The key proposed by the key generator.
            entry: The text and its interpolation names.

        Returns:
            ``key`` itself, the existing key when the same message is already
            known, or a suffixed key if ``key`` already holds a different text.
        """
        existing_key = self._by_signature.get(entry.signature)
        if existing_key is not None:
            return existing_key

        resolved = key
        if key in self._entries:
            suffix = 2
            while f"{key}_{suffix}" in self._entries:
                suffix += 1
            resolved = f"{key}_{suffix}"
            self.collisions.append(KeyCollision(
                key=key,
                texts=[self._entries[key].text, entry.text],
                resolved_key=resolved,
            ))
            logger.warning("Key collision on '%s': '%s' vs '%s'; using '%s'",
                           key, self._entries[key].text, entry.text, resolved)

        self._entries[resolved] = entry
        self._by_signature[entry.signature] = resolved
        return resolved

    def texts(self) -> Dict[str, str]:
        return {key: entry.text for key, entry in self._entries.items()}

    def to_detail_dict(self) -> Dict[str, Dict[str, object]]:
        return {
            key: {
                'text': entry.text,
                'sourceFile': entry.source_file,
                'interpolations': list(entry.interpolations),
            }
            for key, entry in sorted(self._entries.items())
        }

    @classmethod
    def from_detail_dict(cls, data: Dict[str, Dict[str, object]]) -> 'TranslationTable':
        """Rebuild a table from a previously written detail file."""
        entries = {}
        for key, value in data.items():
            if isinstance(value, str):
                entries[key] = TranslationEntry(text=value, source_file='')
            else:
                entries[key] = TranslationEntry(
                    text=str(value.get('text', '')),
                    source_file=str(value.get('sourceFile', '')),
                    interpolations=list(value.get('interpolations') or []),
                )
        return cls(entries)
