"""
Email syntax checks shared by token verification and recipient suggestions.
"""

from typing import Any

from pydantic import EmailStr, TypeAdapter, ValidationError

_email_adapter = TypeAdapter(EmailStr)


def is_valid_email(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        _email_adapter.validate_python(value)
    except ValidationError:
        return False
    return True
