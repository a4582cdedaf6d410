from enum import Enum


class CompileErrorKind(str, Enum):
    UNKNOWN_TABLE = "UNKNOWN_TABLE"
    UNKNOWN_COLUMN = "UNKNOWN_COLUMN"
    UNSAFE_IDENTIFIER = "UNSAFE_IDENTIFIER"
    TENANT_SCOPE_REQUIRED = "TENANT_SCOPE_REQUIRED"
    TENANT_SCOPE_MISMATCH = "TENANT_SCOPE_MISMATCH"
    UNSAFE_MUTATION = "UNSAFE_MUTATION"
    INVALID_FILTER = "INVALID_FILTER"
    EMPTY_VALUES = "EMPTY_VALUES"
    UNSUPPORTED_COMMAND = "UNSUPPORTED_COMMAND"


class CompileError(Exception):
    """A command that can never become safe SQL. Raised before any SQL is sent."""

    def __init__(self, kind: CompileErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


class TemplateResolutionError(ValueError):
    """A {{token}} that none of the template families could resolve."""
