"""Detection of Han-script text inside raw source strings."""
import re

# CJK Unified Ideographs, the range the runtime locale files are keyed on.
TARGET_TEXT_PATTERN = re.compile(r'[一-龥]')


def contains_target_text(value: str) -> bool:
    """Return True if ``value`` contains at least one Han character."""
    if not value:
        return False
    return TARGET_TEXT_PATTERN.search(value) is not None
