#!/usr/bin/env python3
"""
🛡️ Input Validation Module for Concord
Validates request bodies before they reach the engines:
- User and item identifiers
- Submission payloads (URLs, pattern ids, effect names)
- Classifications and vote directions
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..core.models import Direction


@dataclass
class ValidationResult:
    """Result of input validation with value and error details."""
    is_valid: bool
    value: Any = None
    error: str = ""
    field_name: str = ""


class ValidationError(Exception):
    """Raised by the ``validate_*_request`` helpers."""

    def __init__(self, field_name: str, message: str):
        self.field_name = field_name
        self.message = message
        super().__init__(f"{field_name}: {message}")


class InputValidator:
    """Centralized input validation for Concord requests."""

    MAX_PAYLOAD_LENGTH = 2048
    MAX_TITLE_LENGTH = 200

    IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z0-9_.@:\-]{1,128}$')
    CLASSIFICATION_PATTERN = re.compile(r'^[a-z][a-z0-9_\-]{0,31}$')
    CONTROL_CHARS = re.compile(r'[\x00-\x1F]')

    @classmethod
    def validate_identifier(cls, value: Any, field_name: str, required: bool = True) -> ValidationResult:
        if value is None or value == "":
            if required:
                return ValidationResult(False, None, f"{field_name} is required", field_name)
            return ValidationResult(True, None, "", field_name)
        value = str(value).strip()
        if not cls.IDENTIFIER_PATTERN.match(value):
            return ValidationResult(False, None, f"{field_name} contains invalid characters", field_name)
        return ValidationResult(True, value, "", field_name)

    @classmethod
    def validate_payload(cls, value: Any, field_name: str = "payload") -> ValidationResult:
        """Payload is a media URL, Spotify URI, pattern id or effect name."""
        if not isinstance(value, str) or not value.strip():
            return ValidationResult(False, None, f"{field_name} is required", field_name)
        value = value.strip()
        if len(value) > cls.MAX_PAYLOAD_LENGTH:
            return ValidationResult(False, None, f"{field_name} is too long (max {cls.MAX_PAYLOAD_LENGTH})", field_name)
        if cls.CONTROL_CHARS.search(value):
            return ValidationResult(False, None, f"{field_name} contains control characters", field_name)
        return ValidationResult(True, value, "", field_name)

    @classmethod
    def validate_title(cls, value: Any, field_name: str = "title") -> ValidationResult:
        if value is None:
            return ValidationResult(True, None, "", field_name)
        if not isinstance(value, str):
            return ValidationResult(False, None, f"{field_name} must be a string", field_name)
        value = cls.CONTROL_CHARS.sub("", value).strip()[:cls.MAX_TITLE_LENGTH]
        return ValidationResult(True, value or None, "", field_name)

    @classmethod
    def validate_classification(cls, value: Any, field_name: str = "classification") -> ValidationResult:
        if value is None or value == "":
            return ValidationResult(True, None, "", field_name)
        value = str(value).strip().lower()
        if not cls.CLASSIFICATION_PATTERN.match(value):
            return ValidationResult(False, None, f"{field_name} must be a short lowercase word", field_name)
        return ValidationResult(True, value, "", field_name)

    @classmethod
    def validate_direction(cls, value: Any, field_name: str = "direction") -> ValidationResult:
        try:
            return ValidationResult(True, Direction.parse(value), "", field_name)
        except ValueError as e:
            return ValidationResult(False, None, str(e), field_name)


def _require(result: ValidationResult) -> Any:
    if not result.is_valid:
        raise ValidationError(result.field_name, result.error)
    return result.value


def validate_submit_request(data: Dict[str, Any]) -> Dict[str, Any]:
    """Validate ``{userId, payload, classification?, title?}``."""
    return {
        "user_id": _require(InputValidator.validate_identifier(data.get("userId"), "userId")),
        "payload": _require(InputValidator.validate_payload(data.get("payload"))),
        "classification": _require(InputValidator.validate_classification(data.get("classification"))),
        "title": _require(InputValidator.validate_title(data.get("title"))),
    }


def validate_vote_request(data: Dict[str, Any], *, with_direction: bool = True) -> Dict[str, Any]:
    """Validate ``{subjectId, voterId, direction}``; ``userId`` is accepted for ``voterId``."""
    validated: Dict[str, Optional[Any]] = {
        "subject_id": _require(InputValidator.validate_identifier(data.get("subjectId"), "subjectId")),
        "user_id": _require(
            InputValidator.validate_identifier(data.get("voterId", data.get("userId")), "voterId")
        ),
    }
    if with_direction:
        validated["direction"] = _require(InputValidator.validate_direction(data.get("direction")))
    return validated


def validate_user_request(data: Dict[str, Any], field_name: str = "userId") -> str:
    return _require(InputValidator.validate_identifier(data.get(field_name), field_name))
