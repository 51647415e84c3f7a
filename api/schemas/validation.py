# WORKFLOW: JSON Schema gate for calculation responses.
# Used by: Calculator endpoint, tests
# Functions:
# 1. SchemaValidator.validate_response() - Raise on the first schema violation
# 2. SchemaValidator.get_validation_errors() - Readable first violation, or None
# 3. validate_response_dict() - Module-level shortcut used by the router
#
# Validation flow: Calculation dict -> Draft-07 check -> Returned or rejected (500)

import json
import jsonschema
from pathlib import Path
from typing import Dict, Any, Optional
import logging

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA_PATH = Path(__file__).parent.parent.parent / "schema" / "calculation_response.schema.json"


class SchemaValidator:
    """Draft-07 validator for calculation response payloads."""

    def __init__(self, schema_path: Optional[Path] = None):
        self.schema_path = schema_path or DEFAULT_SCHEMA_PATH
        self.schema = self._load_schema()
        jsonschema.Draft7Validator.check_schema(self.schema)
        self._validator = jsonschema.Draft7Validator(self.schema)

    def _load_schema(self) -> Dict[str, Any]:
        try:
            with open(self.schema_path, 'r') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load response schema {self.schema_path}: {e}")
            raise

    def validate_response(self, response_data: Dict[str, Any]) -> bool:
        """
        Validate a calculation payload.

        Returns:
            True if valid, raises jsonschema.ValidationError otherwise
        """
        error = jsonschema.exceptions.best_match(self._validator.iter_errors(response_data))
        if error is not None:
            logger.error(f"Response for {response_data.get('calculation_id')} failed schema validation: {error.message}")
            raise error
        return True

    def get_validation_errors(self, response_data: Dict[str, Any]) -> Optional[str]:
        errors = sorted(self._validator.iter_errors(response_data), key=lambda e: list(e.path))
        if not errors:
            return None
        first = errors[0]
        location = ".".join(str(p) for p in first.path) or "<root>"
        return f"{location}: {first.message}"


schema_validator = SchemaValidator()


def validate_response_dict(response_dict: Dict[str, Any]) -> bool:
    return schema_validator.validate_response(response_dict)
