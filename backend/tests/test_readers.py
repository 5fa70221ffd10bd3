"""
Unit tests for the CSV, JSON, YAML and XML readers.
"""

import pytest

from importer.common.exceptions import InvalidOptionError, ReaderError
from importer.plugins.registry import get_reader


# ============================================================================
# CSV
# ============================================================================


class TestCSVReader:
    """Test CSV parsing."""

    def test_header_row_names_columns(self):
        """Test rows are keyed by the header row and values stay strings."""
        result = get_reader("csv").read(b"make,year\nHonda,2003\nBMW,2012\n")
        assert result.headers == ["make", "year"]
        assert result.rows == [{"make": "Honda", "year": "2003"}, {"make": "BMW", "year": "2012"}]

    def test_without_header(self):
        """Test positional column names when has_header is off."""
        result = get_reader("csv").read("a;b\n", {"delimiter": ";", "has_header": False})
        assert result.headers == ["column_1", "column_2"]
        assert result.rows == [{"column_1": "a", "column_2": "b"}]

    def test_tab_alias_and_trim(self):
        """Test the escaped tab delimiter and whitespace trimming."""
        result = get_reader("csv").read("name\tcity\n  Ann \t Austin\n", {"delimiter": "\\t"})
        assert result.rows == [{"name": "Ann", "city": "Austin"}]

    def test_bom_and_crlf(self):
        """Test a UTF-8 BOM and CRLF line endings are normalized."""
        result = get_reader("csv").read("\ufeffid,name\r\n1,x\r\n".encode("utf-8"))
        assert result.headers == ["id", "name"]

    def test_duplicate_headers_are_made_unique(self):
        """Test repeated header names get a suffix."""
        result = get_reader("csv").read("price,price\n1,2\n")
        assert result.headers == ["price", "price_1"]

    def test_empty_contents(self):
        """Test empty input gives no rows."""
        assert get_reader("csv").read(b"").rows == []

    def test_binary_contents_rejected(self):
        """Test NUL bytes are reported as invalid content."""
        with pytest.raises(ReaderError, match="Invalid content"):
            get_reader("csv").read(b"a,b\n\x00\x01,2\n")

    def test_invalid_delimiter_option(self):
        """Test the delimiter must be one of the supported characters."""
        with pytest.raises(InvalidOptionError):
            get_reader("csv").read("a\n", {"delimiter": "#"})


# ============================================================================
# JSON / YAML
# ============================================================================


class TestJSONReader:
    """Test JSON parsing."""

    def test_entry_point(self):
        """Test rows are read from a nested path."""
        doc = '{"inventory": {"listing": [{"vin": "A"}, {"vin": "B", "trim": "LX"}]}}'
        result = get_reader("json").read(doc, {"entry_point": "inventory.listing"})
        assert result.total_rows == 2
        assert result.headers == ["vin", "trim"]

    def test_single_object_is_one_row(self):
        """Test a top-level object becomes one row."""
        assert get_reader("json").read('{"a": 1}').rows == [{"a": 1}]

    def test_scalars_become_value_rows(self):
        """Test scalar list items are wrapped."""
        assert get_reader("json").read("[1, 2]").rows == [{"value": 1}, {"value": 2}]

    def test_missing_entry_point(self):
        """Test a missing entry point is a parse failure."""
        with pytest.raises(ReaderError, match="Entry point 'data' not found"):
            get_reader("json").read('{"items": []}', {"entry_point": "data"})

    def test_malformed_json(self):
        """Test invalid JSON raises parsing_failed."""
        with pytest.raises(ReaderError, match="Parsing failed"):
            get_reader("json").read("{not json")


class TestYAMLReader:
    """Test YAML parsing."""

    def test_entry_point_list(self):
        """Test rows from a YAML list under a key."""
        doc = "units:\n  - vin: A\n    year: 2020\n  - vin: B\n"
        result = get_reader("yaml").read(doc, {"entry_point": "units"})
        assert result.rows == [{"vin": "A", "year": 2020}, {"vin": "B"}]

    def test_malformed_yaml(self):
        """Test invalid YAML raises parsing_failed."""
        with pytest.raises(ReaderError):
            get_reader("yaml").read("a: [1, 2\n")


# ============================================================================
# XML
# ============================================================================


class TestXMLReader:
    """Test XML parsing."""

    DOC = (
        "<inventory>"
        "<vehicle id=\"1\"><make>Honda</make><images><url>a.jpg</url><url>b.jpg</url></images></vehicle>"
        "<vehicle id=\"2\"><make> BMW </make></vehicle>"
        "</inventory>"
    )

    def test_entry_point(self):
        """Test row elements selected by a descendant path."""
        result = get_reader("xml").read(self.DOC, {"entry_point": "//vehicle"})
        assert result.total_rows == 2
        assert result.rows[0]["@attributes"] == {"id": "1"}
        assert result.rows[0]["images"]["url"] == ["a.jpg", "b.jpg"]
        assert result.rows[1]["make"] == "BMW"

    def test_repeated_children_unwrapped_without_entry_point(self):
        """Test the repeated child list is the row set."""
        result = get_reader("xml").read(self.DOC)
        assert result.total_rows == 2

    def test_keep_root(self):
        """Test keep_root wraps the document in its root tag."""
        result = get_reader("xml").read(self.DOC, {"keep_root": True})
        assert list(result.rows[0]) == ["inventory"]

    def test_not_xml(self):
        """Test content that does not start with a tag is rejected."""
        with pytest.raises(ReaderError, match="Invalid content"):
            get_reader("xml").read("vin,make\n")
