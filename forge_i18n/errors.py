"""Exception types raised by the extraction pipeline."""


class ForgeI18nError(Exception):
    """Base class for all forge-i18n errors."""


class ConfigError(ForgeI18nError):
    """Raised when the configuration file is missing required values or is invalid."""


class SourceParseError(ForgeI18nError):
    """Raised when a source file cannot be parsed without syntax errors."""

    def __init__(self, file_path: str, line: int, column: int):
        self.file_path = file_path
        self.line = line
        self.column = column
        super().__init__(f"Syntax error in {file_path} at line {line}, column {column}")


class RewriteError(ForgeI18nError):
    """Raised when the rewritten source no longer parses; the original file is kept."""


class KeyGenerationError(ForgeI18nError):
    """Raised when a key cannot be produced for a text and no fallback is allowed."""
