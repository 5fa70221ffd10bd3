from __future__ import annotations
import xml.etree.ElementTree as ET
from typing import Any, Dict, List

from importer.common.exceptions import ReaderError
from importer.plugins.api import ReadResult
from importer.plugins.options import OptionDefinition
from importer.plugins.registry import register_reader
from .base import BaseReader, as_rows, collect_headers


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if tag.startswith("{") else tag


def element_to_value(el: ET.Element) -> Any:
    """
    Convert one element into plain data.

    Leaf without attributes -> its text (None when empty). Attributes go under
    `@attributes`, text next to attributes or children under `@content`.
    Repeated child tags become lists.
    """
    text = (el.text or "").strip()
    children: Dict[str, List[Any]] = {}
    for child in el:
        children.setdefault(_local(child.tag), []).append(element_to_value(child))

    if not children and not el.attrib:
        return text or None

    out: Dict[str, Any] = {tag: values[0] if len(values) == 1 else values for tag, values in children.items()}
    if text:
        out["@content"] = text
    if el.attrib:
        out["@attributes"] = {_local(k): v for k, v in el.attrib.items()}
    return out


def _relative_path(entry_point: str, root_tag: str) -> str:
    """ElementTree only evaluates paths relative to the root element."""
    path = entry_point.strip()
    if path.startswith("//"):
        return "." + path
    if path.startswith("/"):
        parts = path.strip("/").split("/")
        if parts and parts[0] == root_tag:
            parts = parts[1:]
        return "./" + "/".join(parts) if parts else "."
    return path


@register_reader
class XMLReader(BaseReader):
    """
    Reader for XML documents (ElementTree).

    Options:
      - entry_point: path of the row elements ("//vehicle", "listing/vehicle")
      - keep_root: without entry_point, keep the root element as the row key
      - trim, encoding
    """
    name = "xml"

    option_definitions = {
        "entry_point": OptionDefinition("string", "", "Path of the row elements (e.g. \"//unit\")"),
        "keep_root": OptionDefinition("boolean", False, "Keep root element in output"),
        "trim": OptionDefinition("boolean", True, "Trim whitespace from string values"),
        "encoding": OptionDefinition("string", "utf-8", "Character encoding of the raw contents"),
    }

    def do_read(self, text: str, options: Dict[str, Any]) -> ReadResult:
        if not text.strip():
            raise ReaderError.invalid_content(self.name, "document is empty")
        if not text.lstrip().startswith("<"):
            raise ReaderError.invalid_content(self.name, "document does not start with a tag")
        try:
            root = ET.fromstring(text)
        except ET.ParseError as e:
            raise ReaderError.parsing_failed(self.name, str(e)) from e

        root_tag = _local(root.tag)
        entry_point = options["entry_point"]
        if entry_point:
            try:
                nodes = root.findall(_relative_path(entry_point, root_tag))
            except SyntaxError as e:
                raise ReaderError.parsing_failed(self.name, f"invalid entry point '{entry_point}': {e}") from e
            rows = as_rows([element_to_value(n) for n in nodes])
        elif options["keep_root"]:
            rows = as_rows({root_tag: element_to_value(root)})
        else:
            rows = as_rows(self._unwrap(element_to_value(root)))

        return ReadResult(rows=rows, headers=collect_headers(rows), meta={"root": root_tag})

    @staticmethod
    def _unwrap(value: Any) -> Any:
        # <items><item/>...</items>: the repeated child list is the row set
        if isinstance(value, dict):
            keys = [k for k in value if not k.startswith("@")]
            if len(keys) == 1 and isinstance(value[keys[0]], list):
                return value[keys[0]]
        return value
