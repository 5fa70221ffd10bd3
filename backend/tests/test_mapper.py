"""
Unit tests for transformers and the DataMapperService.

Tests per-field transformation, value-mapping tables, defaults, required
fields and per-row error collection.
"""

import pytest

from importer.common.exceptions import FactoryError
from importer.plugins.registry import get_transformer
from importer.proc.mapper import DataMapperService, FieldExtractor


@pytest.fixture
def mapper():
    """Mapper over the global transformer registry."""
    return DataMapperService()


# ============================================================================
# Transformers
# ============================================================================


class TestTransformers:
    """Test built-in transformers."""

    @pytest.mark.parametrize("name,value,expected", [
        ("trim", "  a ", "a"),
        ("upper", "vin", "VIN"),
        ("lower", "BMW", "bmw"),
        ("integer", "1,299.9", 1299),
        ("int", 7.8, 7),
        ("float", "$12,500.50", 12500.5),
        ("bool", "yes", True),
        ("bool", "0", False),
        ("array_first", ["a", "b"], "a"),
        ("slug", "Honda Accord EX-L", "honda-accord-ex-l"),
    ])
    def test_transform(self, name, value, expected):
        """Test each transformer on a representative value."""
        assert get_transformer(name).transform(value) == expected

    def test_date_with_format(self):
        """Test date parsing and strftime output."""
        assert get_transformer("date").transform("03/15/2024", "%Y-%m-%d") == "2024-03-15"

    def test_array_join_separator(self):
        """Test array_join uses the format as separator."""
        assert get_transformer("array_join").transform(["a", None, "c"], "|") == "a||c"

    def test_float_fallback_defaults_to_zero(self):
        """Test float falls back to 0.0 without a rule default."""
        assert get_transformer("float").fallback(None) == 0.0

    @pytest.mark.parametrize("name,value", [("integer", "abc"), ("bool", "maybe"), ("date", "not a date")])
    def test_unconvertible_values_raise(self, name, value):
        """Test transformers raise ValueError on bad input."""
        with pytest.raises(ValueError):
            get_transformer(name).transform(value)


class TestFieldExtractor:
    """Test wildcard paths."""

    def test_wildcard_collects_values(self):
        """Test `*` expands over list items."""
        row = {"images": [{"url": "a"}, {"url": "b"}, {"alt": "x"}]}
        assert FieldExtractor().extract(row, "images.*.url") == ["a", "b"]

    def test_index_path(self):
        """Test numeric segments index lists."""
        assert FieldExtractor().extract({"images": ["a", "b"]}, "images.1") == "b"


# ============================================================================
# Service
# ============================================================================


class TestDataMapperService:
    """Test DataMapperService.map()."""

    def test_failed_transformation_records_error_and_uses_default(self, mapper):
        """Test a non-numeric price maps to the default and records an error on its row."""
        rows = [{"price": "12.5"}, {"price": "abc"}]
        rules = [{"source_field": "price", "target_field": "price", "transformation": "float", "default_value": 0.0}]

        result = mapper.map(rows, rules)

        assert result.mapped_data == [{"price": 12.5}, {"price": 0.0}]
        assert list(result.errors) == [1]
        assert "Field 'price'" in result.errors[1][0]

    def test_value_mapping_applies_after_transform(self, mapper):
        """Test lookups against the transformed value."""
        rules = [{
            "source_field": "condition",
            "target_field": "condition",
            "transformation": "lower",
            "value_mapping": [{"from": "n", "to": "new"}, {"from": "u", "to": "used"}],
        }]
        result = mapper.map([{"condition": "N"}, {"condition": "U"}, {"condition": "cpo"}], rules)
        assert [r["condition"] for r in result.mapped_data] == ["new", "used", "cpo"]

    def test_value_mapping_rescues_failed_transform(self, mapper):
        """Test a mapped raw value wins over a transform failure."""
        rules = [{"source_field": "doors", "target_field": "doors", "transformation": "integer",
                  "value_mapping": {"two": 2}}]
        result = mapper.map([{"doors": "two"}], rules)
        assert result.mapped_data == [{"doors": 2}]
        assert result.errors == {}

    def test_required_field_missing(self, mapper):
        """Test a missing required field is recorded and the field left out."""
        rules = [{"source_field": "vin", "target_field": "vin", "is_required": True}]
        result = mapper.map([{"make": "Honda"}], rules)
        assert result.mapped_data == [{}]
        assert result.errors == {0: ["Required field 'vin' not found in data"]}

    def test_missing_optional_field_gets_default(self, mapper):
        """Test absent fields take the rule default."""
        rules = [{"source_field": "color", "target_field": "color", "default_value": "unknown"}]
        assert mapper.map([{"color": ""}], rules).mapped_data == [{"color": "unknown"}]

    def test_dotted_target_builds_nested_output(self, mapper):
        """Test dotted targets nest."""
        rules = [{"source_field": "city", "target_field": "dealer.city"}]
        assert mapper.map([{"city": "Austin"}], rules).mapped_data == [{"dealer": {"city": "Austin"}}]

    def test_stored_key_names(self, mapper):
        """Test `transformer` and `required` are accepted as rule keys."""
        rules = [{"source_field": "make", "target_field": "make", "transformer": "upper", "required": True}]
        assert mapper.map([{"make": "bmw"}], rules).mapped_data == [{"make": "BMW"}]

    def test_headers_map_list_rows(self, mapper):
        """Test list rows are keyed by the given headers."""
        rules = [{"source_field": "b", "target_field": "second"}]
        result = mapper.map([["1", "2"]], rules, headers=["a", "b"])
        assert result.mapped_data == [{"second": "2"}]
        assert result.headers == ["second"]

    def test_unknown_transformer_raises(self, mapper):
        """Test rules naming an unregistered transformer."""
        with pytest.raises(FactoryError):
            mapper.map([{"a": 1}], [{"source_field": "a", "target_field": "a", "transformation": "rot13"}])

    def test_transformer_options(self, mapper):
        """Test the name -> label catalogue."""
        options = mapper.get_transformer_options()
        assert options["float"] == "Float"
        assert "none" in options
