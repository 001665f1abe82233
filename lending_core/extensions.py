"""
Extension Fields Module

Schema for the custom data a lender attaches to loans (branch, loan officer,
purpose, ...). Values are validated at the boundary and stored on the loan as
an opaque map; the schedule, penalty and allocation code never reads them.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidExtensionError


class FieldType(Enum):
    """Supported field types"""
    TEXT = "text"
    NUMBER = "number"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATE = "date"
    ENUM = "enum"
    PHONE = "phone"
    EMAIL = "email"


class ValidationRuleType(Enum):
    MIN_LENGTH = "min_length"
    MAX_LENGTH = "max_length"
    MIN_VALUE = "min_value"
    MAX_VALUE = "max_value"
    REGEX = "regex"


@dataclass(frozen=True)
class ValidationRule:
    """Validation rule for field values"""
    rule_type: ValidationRuleType
    value: Any
    error_message: str

    def __post_init__(self):
        if not self.error_message:
            raise ValueError("Error message is required for validation rules")


@dataclass
class FieldDefinition:
    """One custom field a loan may carry"""
    name: str
    field_type: FieldType
    label: str = ""
    is_required: bool = False
    default_value: Optional[Any] = None
    enum_values: List[str] = field(default_factory=list)
    validation_rules: List[ValidationRule] = field(default_factory=list)

    def __post_init__(self):
        if not re.match(r'^[a-zA-Z][a-zA-Z0-9_]*$', self.name):
            raise ValueError("Field name must start with letter and contain only letters, numbers, and underscores")

        if self.field_type == FieldType.ENUM and not self.enum_values:
            raise ValueError("ENUM fields must have enum_values defined")

        if self.default_value is not None:
            errors = self.validate_value(self.default_value)
            if errors:
                raise ValueError(f"Invalid default value: {'; '.join(errors)}")

    def validate_value(self, value: Any) -> List[str]:
        """Return the problems with value; an empty list means it is valid"""
        errors = []

        if value is None:
            if self.is_required:
                errors.append(f"{self.name}: field is required")
            return errors

        if self.field_type == FieldType.TEXT:
            if not isinstance(value, str):
                errors.append(f"{self.name}: value must be a string")

        elif self.field_type == FieldType.NUMBER:
            if not isinstance(value, int) or isinstance(value, bool):
                errors.append(f"{self.name}: value must be an integer")

        elif self.field_type == FieldType.DECIMAL:
            if _as_decimal(value) is None:
                errors.append(f"{self.name}: value must be a valid decimal")

        elif self.field_type == FieldType.BOOLEAN:
            if not isinstance(value, bool):
                errors.append(f"{self.name}: value must be a boolean")

        elif self.field_type == FieldType.DATE:
            if isinstance(value, str):
                try:
                    datetime.strptime(value, '%Y-%m-%d')
                except ValueError:
                    errors.append(f"{self.name}: date must be in YYYY-MM-DD format")
            elif not isinstance(value, date):
                errors.append(f"{self.name}: value must be a date or date string (YYYY-MM-DD)")

        elif self.field_type == FieldType.ENUM:
            if str(value) not in self.enum_values:
                errors.append(f"{self.name}: value must be one of: {', '.join(self.enum_values)}")

        elif self.field_type == FieldType.PHONE:
            if not re.match(r'^[\+\-\d\s\(\)]+$', str(value)):
                errors.append(f"{self.name}: phone must contain only digits, +, -, spaces, and parentheses")

        elif self.field_type == FieldType.EMAIL:
            if not re.match(r'^[^@]+@[^@]+\.[^@]+$', str(value)):
                errors.append(f"{self.name}: invalid email format")

        if not errors:
            for rule in self.validation_rules:
                if not _rule_passes(rule, value):
                    errors.append(f"{self.name}: {rule.error_message}")

        return errors

    def normalize(self, value: Any) -> Any:
        """JSON-safe form of an already validated value"""
        if value is None:
            return None
        if self.field_type == FieldType.DATE and isinstance(value, date):
            return value.isoformat()
        if self.field_type == FieldType.DECIMAL:
            return str(_as_decimal(value))
        return value


def _as_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or isinstance(value, float):
        return None
    if not isinstance(value, (Decimal, int, str)):
        return None
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        return None
    return result if result.is_finite() else None


def _rule_passes(rule: ValidationRule, value: Any) -> bool:
    if rule.rule_type == ValidationRuleType.MIN_LENGTH:
        return len(str(value)) >= rule.value
    if rule.rule_type == ValidationRuleType.MAX_LENGTH:
        return len(str(value)) <= rule.value
    if rule.rule_type in (ValidationRuleType.MIN_VALUE, ValidationRuleType.MAX_VALUE):
        number = _as_decimal(value)
        if number is None:
            return False
        bound = Decimal(str(rule.value))
        return number >= bound if rule.rule_type == ValidationRuleType.MIN_VALUE else number <= bound
    if rule.rule_type == ValidationRuleType.REGEX:
        return re.match(rule.value, str(value)) is not None
    return True


class ExtensionSchema:
    """The set of custom fields loans may carry"""

    def __init__(self, fields: Optional[List[FieldDefinition]] = None, allow_unknown: bool = False):
        self._fields: Dict[str, FieldDefinition] = {}
        self.allow_unknown = allow_unknown
        for definition in fields or []:
            self.add_field(definition)

    def add_field(self, definition: FieldDefinition) -> None:
        if definition.name in self._fields:
            raise ValueError(f"Field '{definition.name}' is already defined")
        self._fields[definition.name] = definition

    @property
    def fields(self) -> Tuple[FieldDefinition, ...]:
        return tuple(self._fields.values())

    def validate(self, values: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Validate a custom field map

        Args:
            values: Field name -> value, as supplied by the caller

        Returns:
            Normalized map with defaults filled in

        Raises:
            InvalidExtensionError: listing every problem found
        """
        values = dict(values or {})
        errors = []

        unknown = sorted(set(values) - set(self._fields))
        if unknown and not self.allow_unknown:
            errors.append(f"Unknown fields: {', '.join(unknown)}")

        result = {name: values[name] for name in unknown} if self.allow_unknown else {}
        for name, definition in self._fields.items():
            value = values.get(name, definition.default_value)
            field_errors = definition.validate_value(value)
            if field_errors:
                errors.extend(field_errors)
            elif value is not None:
                result[name] = definition.normalize(value)

        if errors:
            raise InvalidExtensionError("; ".join(errors))
        return result
