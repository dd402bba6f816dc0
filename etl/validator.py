"""
Field-Level Validation Rules

Defines the canonical patterns a cleaned profile must satisfy.
The same patterns are exposed as PostgreSQL regular expressions so the
cleaning statements and the Python checks agree.
"""

import re
import logging
from datetime import date, datetime
from typing import Any, Tuple, Optional, List, Dict
from abc import ABC, abstractmethod

import pandas as pd

logger = logging.getLogger(__name__)

MIN_BIRTH_DATE = date(1900, 1, 1)
MIN_PHONE_DIGITS = 10

# PostgreSQL ARE counterparts of the Python patterns below; Python checks use
# fullmatch since "$" there also matches before a trailing newline
EMAIL_PATTERN_SQL = r"^[^@[:space:]]+@[^@[:space:]]+\.[A-Za-z]{2,}$"
PHONE_PATTERN_SQL = r"^\+?[0-9]{10,15}$"


class Validator(ABC):
    """Abstract base class for field validators."""

    @abstractmethod
    def validate(self, value: Any) -> Tuple[bool, Optional[str]]:
        """
        Validate a value.

        Returns:
            Tuple of (is_valid, error_message)
        """
        pass


class EmailValidator(Validator):
    """Validates email addresses: local@domain.tld with a 2+ letter TLD."""

    EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")

    def validate(self, value: Any) -> Tuple[bool, Optional[str]]:
        if not value or not isinstance(value, str):
            return False, "Email is required and must be a string"

        if not self.EMAIL_REGEX.fullmatch(value):
            return False, f"Invalid email format: {value}"

        if len(value) > 100:
            return False, "Email exceeds maximum length of 100 characters"

        return True, None


class UsernameValidator(Validator):
    """Validates usernames are present, trimmed and lowercase."""

    def validate(self, value: Any) -> Tuple[bool, Optional[str]]:
        if not value or not isinstance(value, str) or not value.strip():
            return False, "Username is required and must be a string"

        if value != value.strip().lower():
            return False, f"Username is not normalized: {value!r}"

        if len(value) > 50:
            return False, "Username exceeds maximum length of 50 characters"

        return True, None


class FullNameValidator(Validator):
    """Validates full names are present with single internal spaces."""

    def validate(self, value: Any) -> Tuple[bool, Optional[str]]:
        if not value or not isinstance(value, str) or not value.strip():
            return False, "Full name is required and must be a string"

        if value != " ".join(value.split()):
            return False, f"Full name has irregular whitespace: {value!r}"

        return True, None


class PhoneValidator(Validator):
    """Validates stored phone numbers: optional '+' followed by 10-15 digits."""

    PHONE_REGEX = re.compile(r"^\+?[0-9]{10,15}$")

    def validate(self, value: Any) -> Tuple[bool, Optional[str]]:
        """
        Validate phone number format.

        Args:
            value: Phone number to validate

        Returns:
            Tuple of (is_valid, error_message)
        """
        if value is None:
            # Phone is optional
            return True, None

        if not isinstance(value, str):
            return False, "Phone must be a string"

        if not self.PHONE_REGEX.fullmatch(value):
            return False, f"Invalid phone format: {value}"

        return True, None


class BirthDateValidator(Validator):
    """Validates birth dates fall within [1900-01-01, today]."""

    def __init__(self, today: Optional[date] = None):
        self.today = today

    def validate(self, value: Any) -> Tuple[bool, Optional[str]]:
        """
        Validate birth date range.

        Args:
            value: date, datetime or ISO string; None is allowed

        Returns:
            Tuple of (is_valid, error_message)
        """
        if value is None:
            return True, None

        parsed = parse_date(value)
        if parsed is None:
            return False, f"Birth date is not a valid date: {value}"

        today = self.today or date.today()
        if parsed > today:
            return False, f"Future Date: {parsed.isoformat()}"
        if parsed < MIN_BIRTH_DATE:
            return False, f"Too Old: {parsed.isoformat()}"

        return True, None


def is_missing(value: Any) -> bool:
    """True for None and for pandas missing markers (NaN, NaT, pd.NA)."""
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def parse_date(value: Any) -> Optional[date]:
    """Coerce a date-like value to a date, or None when it cannot be read."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if hasattr(value, "to_pydatetime"):
        return value.to_pydatetime().date()
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


def strip_phone(value: Optional[str]) -> Optional[str]:
    """Remove every character other than digits and '+'."""
    if value is None:
        return None
    return re.sub(r"[^0-9+]", "", value)


def count_digits(value: str) -> int:
    return len(re.sub(r"[^0-9]", "", value))


class ProfileRecordValidator:
    """
    Validates joined user/auth records using field validators.
    """

    def __init__(self, today: Optional[date] = None):
        """Initialize validators for each field."""
        self.validators = {
            "email": EmailValidator(),
            "username": UsernameValidator(),
            "full_name": FullNameValidator(),
            "phone_number": PhoneValidator(),
            "birth_date": BirthDateValidator(today),
        }

    def validate_field(self, field: str, value: Any) -> Tuple[bool, Optional[str]]:
        return self.validators[field].validate(value)

    def validate_record(self, record: Dict[str, Any]) -> List[Tuple[str, str]]:
        """
        Validate a complete profile record.

        Args:
            record: Dictionary with user and auth columns

        Returns:
            List of (field, error_message) for every failing field
        """
        errors = []
        for field, validator in self.validators.items():
            if field not in record:
                continue
            value = None if is_missing(record[field]) else record[field]
            is_valid, error = validator.validate(value)
            if not is_valid:
                errors.append((field, error))
        return errors

    def validate_batch(self, records: List[Dict[str, Any]]) -> Tuple[list, list]:
        """
        Validate a batch of records.

        Args:
            records: List of dictionaries with profile data

        Returns:
            Tuple of (valid_records, invalid_records_with_reasons)
        """
        valid_records = []
        invalid_records = []

        for idx, record in enumerate(records, 1):
            errors = self.validate_record(record)

            if not errors:
                valid_records.append(record)
            else:
                invalid_records.append({
                    "row_number": idx,
                    "record": record,
                    "errors": errors,
                })

        logger.info(f"Validation complete: {len(valid_records)} valid, {len(invalid_records)} invalid")

        return valid_records, invalid_records
