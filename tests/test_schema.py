"""Tests for parameter schemas: parsing, defaults and violation reporting."""

import pytest

from aither_core.comms.schema import build_parameter_model, parse_schema, validate_parameters
from aither_core.errors import ParameterValidationError


def _schema():
    return parse_schema(
        {
            "name": {"type": "string", "required": True},
            "vm-count": {"type": "integer", "default": 1},
            "ratio": {"type": "number"},
            "tags": {"type": "array"},
            "mode": {"type": "string", "allowed_values": ["fast", "safe"], "default": "safe"},
        }
    )


class TestParseSchema:
    """Manifest-style type names map onto the declared parameter types."""

    def test_aliases(self) -> None:
        schema = _schema()
        assert schema["vm-count"].type == "int"
        assert schema["tags"].type == "list"

    def test_unknown_type_rejected(self) -> None:
        with pytest.raises(ValueError):
            parse_schema({"x": {"type": "datetime"}})


class TestValidateParameters:
    """Validation applies defaults and reports each bad parameter once."""

    def test_defaults_applied_and_unset_optionals_omitted(self) -> None:
        schema = _schema()
        model = build_parameter_model("Lab.Start", schema)
        params = validate_parameters("Lab.Start", schema, {"name": "lab1"}, model)
        assert params == {"name": "lab1", "vm-count": 1, "mode": "safe"}

    def test_valid_values_pass_through(self) -> None:
        params = validate_parameters(
            "Lab.Start", _schema(), {"name": "lab1", "ratio": 3, "tags": ("a", "b"), "mode": "fast"}
        )
        assert params["ratio"] == 3
        assert isinstance(params["ratio"], int)
        assert params["tags"] == ("a", "b")
        assert params["mode"] == "fast"

    def test_explicit_none_is_accepted(self) -> None:
        params = validate_parameters("Lab.Start", _schema(), {"name": "lab1", "ratio": None})
        assert params["ratio"] is None

    def test_one_violation_per_parameter(self) -> None:
        with pytest.raises(ParameterValidationError) as exc:
            validate_parameters(
                "Lab.Start",
                _schema(),
                {"vm-count": True, "ratio": "high", "mode": "yolo", "extra": 1},
            )
        violations = exc.value.violations
        assert len(violations) == 5
        assert "missing required parameter 'name'" in violations
        assert "unknown parameter 'extra'" in violations
        assert any(v.startswith("parameter 'vm-count'") for v in violations)
        assert any(v.startswith("parameter 'ratio'") for v in violations)
        assert any("must be one of" in v for v in violations)
        assert "Lab.Start" in str(exc.value)

    def test_schemaless_accepts_anything(self) -> None:
        assert build_parameter_model("A.op", {}) is None
        assert validate_parameters("A.op", {}, {"anything": object}) == {"anything": object}
