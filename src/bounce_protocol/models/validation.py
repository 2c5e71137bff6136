"""Validation and parse result models."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from bounce_protocol.models.session import Session


class Severity(str, Enum):
    """Errors make a session invalid; warnings are advisory."""

    ERROR = "error"
    WARNING = "warning"


class ValidationCode(str, Enum):
    """Stable machine-readable issue codes."""

    # Header
    MISSING_PROTOCOL_VERSION = "MISSING_PROTOCOL_VERSION"
    MISSING_CREATED = "MISSING_CREATED"
    MISSING_SESSION_ID = "MISSING_SESSION_ID"
    INVALID_PROTOCOL_VERSION = "INVALID_PROTOCOL_VERSION"
    INVALID_CREATED_FORMAT = "INVALID_CREATED_FORMAT"
    INVALID_SESSION_ID_FORMAT = "INVALID_SESSION_ID_FORMAT"

    # Title
    MISSING_TITLE = "MISSING_TITLE"
    EMPTY_TITLE = "EMPTY_TITLE"

    # Rules
    MISSING_RULES_SECTION = "MISSING_RULES_SECTION"
    MISSING_REQUIRED_RULE = "MISSING_REQUIRED_RULE"
    INVALID_RULE_VALUE = "INVALID_RULE_VALUE"
    DUPLICATE_AGENT_NAME = "DUPLICATE_AGENT_NAME"
    EMPTY_AGENTS_LIST = "EMPTY_AGENTS_LIST"

    # Sections
    MISSING_CONTEXT_SECTION = "MISSING_CONTEXT_SECTION"
    MISSING_DIALOGUE_SECTION = "MISSING_DIALOGUE_SECTION"

    # Entries
    MISSING_ENTRY_ID = "MISSING_ENTRY_ID"
    DUPLICATE_ENTRY_ID = "DUPLICATE_ENTRY_ID"
    MISSING_TURN_ROUND = "MISSING_TURN_ROUND"
    MISSING_STATUS_LINE = "MISSING_STATUS_LINE"
    INVALID_ENTRY_STATUS = "INVALID_ENTRY_STATUS"
    INVALID_STANCE = "INVALID_STANCE"
    INVALID_CONFIDENCE = "INVALID_CONFIDENCE"
    CONFIDENCE_OUT_OF_RANGE = "CONFIDENCE_OUT_OF_RANGE"
    MISSING_YIELD_MARKER = "MISSING_YIELD_MARKER"
    UNKNOWN_AGENT = "UNKNOWN_AGENT"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    ROUND_NOT_MONOTONIC = "ROUND_NOT_MONOTONIC"
    OUT_OF_ORDER_TURN = "OUT_OF_ORDER_TURN"


class ValidationIssue(BaseModel):
    """A single problem found in a session file."""

    severity: Severity
    code: ValidationCode
    message: str
    line: Optional[int] = None
    entry_id: Optional[str] = None


class ValidationResult(BaseModel):
    """Outcome of validating a session."""

    valid: bool
    issues: List[ValidationIssue] = Field(default_factory=list)

    @classmethod
    def from_issues(cls, issues: List[ValidationIssue]) -> "ValidationResult":
        valid = not any(issue.severity == Severity.ERROR for issue in issues)
        return cls(valid=valid, issues=list(issues))

    @property
    def errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.ERROR]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.WARNING]

    def codes(self) -> List[ValidationCode]:
        return [i.code for i in self.issues]


class ParseResult(BaseModel):
    """Result of parsing a session file; the session may be partial."""

    session: Optional[Session] = None
    validation: ValidationResult
