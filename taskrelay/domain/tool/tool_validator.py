from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field

import jsonschema

from taskrelay.domain.tool.tool_registry import ToolSpec


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


# Parameter & result validation against the tool's declared schema
class ToolParameterValidator:
    @staticmethod
    def _validate(payload: Any, schema: Optional[Dict[str, Any]], label: str) -> ValidationResult:
        if not schema:
            return ValidationResult(True)

        validator_cls = jsonschema.validators.validator_for(schema)
        try:
            validator_cls.check_schema(schema)
        except jsonschema.SchemaError as e:
            return ValidationResult(False, [f"Invalid {label} schema: {e.message}"])

        errors = sorted(validator_cls(schema).iter_errors(payload), key=lambda e: list(e.path))
        if errors:
            return ValidationResult(False, [
                f"{label} validation failed at '{'/'.join(str(p) for p in e.path) or '<root>'}': {e.message}"
                for e in errors
            ])
        return ValidationResult(True)

    @staticmethod
    def validate_tool_call(tool: ToolSpec, parameters: Dict[str, Any]) -> ValidationResult:
        if not isinstance(parameters, dict):
            return ValidationResult(False, ["Arguments must be an object"])
        return ToolParameterValidator._validate(parameters, tool.parameters_schema, "Schema")

    @staticmethod
    def validate_tool_result(tool: ToolSpec, result: Dict[str, Any]) -> ValidationResult:
        return ToolParameterValidator._validate(result, tool.result_schema, "Result")
