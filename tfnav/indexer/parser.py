"""Terraform file parsing: block extraction and source range estimation.

HCL files are decoded with python-hcl2 and JSON files with the json module.
Both decoders produce nested dictionaries which are first normalised into a
single canonical shape::

    {"resource": {TYPE: {NAME: [config, ...]}},
     "data":     {TYPE: {NAME: [config, ...]}},
     "module" | "variable" | "output": {NAME: [config, ...]},
     "locals":   [config, ...]}   # one entry per ``locals`` block

Blocks are then emitted from that shape. Source ranges are not provided by
the decoders, so they are estimated from the raw text with an anchored
regular expression followed by a brace-balanced scan.
"""

import dataclasses
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

import hcl2

from .models import (
    BLOCK_KINDS,
    Block,
    ByteRange,
    ParseError,
    ParseResult,
    ParserConfig,
    extract_provider,
)

logger = logging.getLogger(__name__)

FALLBACK_RANGE_LENGTH = 100

TYPED_KINDS = ("resource", "data")
NAMED_KINDS = ("module", "variable", "output")


class TerraformParser(ABC):
    """Base class for Terraform file parsers."""

    @abstractmethod
    def can_parse(self, file_path: str) -> bool:
        """Return True if this parser handles the given file."""
        pass

    @abstractmethod
    def parse_file(
        self, file_path: str, content: str, config: Optional[ParserConfig] = None
    ) -> ParseResult:
        """Parse a file's text into blocks and errors."""
        pass


def _is_meta_key(key: Any) -> bool:
    # python-hcl2 adds __start_line__/__end_line__ style keys when asked for metadata
    return not isinstance(key, str) or key.startswith("__")


def _label(key: str) -> str:
    if len(key) >= 2 and key[0] == key[-1] == '"':
        return key[1:-1]
    return key


def _as_config_list(value: Any) -> List[Dict[str, Any]]:
    if isinstance(value, list):
        return [item if isinstance(item, dict) else {} for item in value] or [{}]
    if isinstance(value, dict):
        return [value]
    return [{}]


def _iter_items(value: Any) -> Iterable[Any]:
    if isinstance(value, list):
        return value
    return [value]


def normalize_tree(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Normalise a decoded Terraform document into the canonical block tree.

    Accepts the list-of-single-key-dicts shape python-hcl2 produces, the
    plain object shape of ``.tf.json`` files, and the already canonical
    shape.
    """
    tree: Dict[str, Any] = {}

    for keyword in BLOCK_KINDS:
        value = raw.get(keyword)
        if value is None:
            continue

        if keyword == "locals":
            tree["locals"] = [
                {k: v for k, v in item.items() if not _is_meta_key(k)}
                if isinstance(item, dict)
                else {}
                for item in _iter_items(value)
            ]
            continue

        if keyword in TYPED_KINDS:
            types = tree.setdefault(keyword, {})
            for item in _iter_items(value):
                if not isinstance(item, dict):
                    continue
                for type_name, named in item.items():
                    if _is_meta_key(type_name):
                        continue
                    names = types.setdefault(_label(type_name), {})
                    for entry in _iter_items(named):
                        if not isinstance(entry, dict):
                            continue
                        for name, config in entry.items():
                            if _is_meta_key(name):
                                continue
                            names.setdefault(_label(name), []).extend(_as_config_list(config))
            continue

        named_blocks = tree.setdefault(keyword, {})
        for item in _iter_items(value):
            if not isinstance(item, dict):
                continue
            for name, config in item.items():
                if _is_meta_key(name):
                    continue
                named_blocks.setdefault(_label(name), []).extend(_as_config_list(config))

    return tree


def decode_hcl(content: str) -> Dict[str, Any]:
    """Decode HCL text into the canonical block tree."""
    raw = hcl2.loads(content)
    if not isinstance(raw, dict):
        raise ValueError("HCL decoder did not return an object")
    return normalize_tree(raw)


def _unquote(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def scan_block_end(content: str, start: int) -> int:
    """Return the offset just past the brace that closes the block opened after ``start``.

    Braces inside double-quoted strings are ignored; backslash escapes inside
    strings are honoured. An unterminated block extends to the end of text.
    """
    depth = 0
    in_string = False
    escaped = False

    for i in range(start, len(content)):
        char = content[i]

        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                return i + 1

    return len(content)


def _hcl_anchor_pattern(
    block_kind: str, name: Optional[str], type_name: Optional[str]
) -> str:
    kind = re.escape(block_kind)
    if block_kind in TYPED_KINDS:
        if name and type_name:
            return rf'\b{kind}\s+"?{re.escape(type_name)}"?\s+"?{re.escape(name)}"?\s*{{'
        if name:
            return rf'\b{kind}\s+"[^"]*"\s+"{re.escape(name)}"'
        return rf'\b{kind}\s+"[^"]*"\s*{{'
    if block_kind == "locals":
        return r"\blocals\s*\{"
    if name:
        return rf'\b{kind}\s+"?{re.escape(name)}"?\s*\{{'
    return rf"\b{kind}\s*\{{"


def _json_anchor(
    content: str, block_kind: str, name: Optional[str], type_name: Optional[str], occurrence: int
) -> Optional[int]:
    keys = [block_kind]
    if type_name:
        keys.append(type_name)
    if name:
        keys.append(name)

    position = 0
    match = None
    for depth, key in enumerate(keys):
        pattern = re.compile(rf'"{re.escape(key)}"\s*:\s*[{{\[]')
        matches = list(pattern.finditer(content, position))
        if not matches:
            return None
        # the last key picks the requested occurrence, outer keys the first match
        index = occurrence if depth == len(keys) - 1 else 0
        if index >= len(matches):
            return None
        match = matches[index]
        position = match.end()

    return match.start() if match else None


def estimate_range(
    content: str,
    block_kind: str,
    name: Optional[str] = None,
    type_name: Optional[str] = None,
    occurrence: int = 0,
    json_format: bool = False,
) -> Optional[ByteRange]:
    """Estimate a block's range in the raw text, or None when it cannot be located."""
    if json_format:
        start = _json_anchor(content, block_kind, name, type_name, occurrence)
    else:
        pattern = re.compile(_hcl_anchor_pattern(block_kind, name, type_name))
        matches = list(pattern.finditer(content))
        start = matches[occurrence].start() if occurrence < len(matches) else None

    if start is None:
        return None

    return ByteRange(start, scan_block_end(content, start))


def fallback_range(content: str) -> ByteRange:
    return ByteRange(0, min(FALLBACK_RANGE_LENGTH, len(content)))


class HCL2Parser(TerraformParser):
    """Parser for ``.tf`` (HCL) and ``.tf.json`` files."""

    def can_parse(self, file_path: str) -> bool:
        return file_path.endswith(".tf") or file_path.endswith(".tf.json")

    def parse_file(
        self, file_path: str, content: str, config: Optional[ParserConfig] = None
    ) -> ParseResult:
        config = config or ParserConfig()
        json_format = file_path.endswith(".tf.json")

        try:
            if json_format:
                tree = self._decode_json(content)
            else:
                tree = decode_hcl(content)
        except json.JSONDecodeError as e:
            return ParseResult(
                errors=[
                    ParseError(
                        message=f"JSON parsing error: {e.msg}",
                        file=file_path,
                        line=e.lineno,
                        column=e.colno,
                        range=ByteRange(e.pos, min(e.pos + 1, len(content))),
                    )
                ]
            )
        except Exception as e:
            return ParseResult(
                errors=[
                    ParseError(
                        message=f"HCL parsing error: {e}",
                        file=file_path,
                        line=getattr(e, "line", None),
                        column=getattr(e, "column", None),
                    )
                ]
            )

        return self._extract_blocks(tree, file_path, content, config, json_format)

    def _decode_json(self, content: str) -> Dict[str, Any]:
        parsed = json.loads(content)
        if not isinstance(parsed, dict):
            raise ValueError("Top-level JSON value must be an object")
        return normalize_tree(parsed)

    def _locate(
        self,
        content: str,
        file_path: str,
        block_kind: str,
        name: Optional[str] = None,
        type_name: Optional[str] = None,
        occurrence: int = 0,
        json_format: bool = False,
    ) -> ByteRange:
        found = estimate_range(content, block_kind, name, type_name, occurrence, json_format)
        if found is None:
            logger.debug(
                f"Could not locate {block_kind} {type_name or ''} {name or ''} in {file_path}, "
                "using fallback range"
            )
            return fallback_range(content)
        return found

    def _extract_blocks(
        self,
        tree: Dict[str, Any],
        file_path: str,
        content: str,
        config: ParserConfig,
        json_format: bool,
    ) -> ParseResult:
        result = ParseResult()
        module_path = tuple(config.module_path)

        for block_kind in TYPED_KINDS:
            if not config.includes(block_kind):
                continue
            for type_name, names in tree.get(block_kind, {}).items():
                for name in names:
                    try:
                        result.blocks.append(
                            Block(
                                block_kind=block_kind,
                                kind=type_name,
                                name=name,
                                provider_hint=extract_provider(type_name),
                                module_path=module_path,
                                file=file_path,
                                byte_range=self._locate(
                                    content, file_path, block_kind, name, type_name,
                                    json_format=json_format,
                                ),
                            )
                        )
                    except Exception as e:
                        result.errors.append(
                            ParseError(
                                message=f"Failed to extract {block_kind} {type_name}.{name}: {e}",
                                file=file_path,
                            )
                        )

        for block_kind in NAMED_KINDS:
            if not config.includes(block_kind):
                continue
            for name, configs in tree.get(block_kind, {}).items():
                try:
                    source = None
                    if block_kind == "module" and configs:
                        source = _unquote(configs[0].get("source"))
                    result.blocks.append(
                        Block(
                            block_kind=block_kind,
                            name=name,
                            module_path=module_path,
                            source_expr=source,
                            file=file_path,
                            byte_range=self._locate(
                                content, file_path, block_kind, name, json_format=json_format
                            ),
                        )
                    )
                except Exception as e:
                    result.errors.append(
                        ParseError(
                            message=f"Failed to extract {block_kind} {name}: {e}",
                            file=file_path,
                        )
                    )

        if config.includes("locals"):
            for occurrence, values in enumerate(tree.get("locals", [])):
                try:
                    result.blocks.append(
                        Block(
                            block_kind="locals",
                            module_path=module_path,
                            local_names=tuple(values.keys()),
                            file=file_path,
                            byte_range=self._locate(
                                content, file_path, "locals",
                                occurrence=occurrence, json_format=json_format,
                            ),
                        )
                    )
                except Exception as e:
                    result.errors.append(
                        ParseError(message=f"Failed to extract locals block: {e}", file=file_path)
                    )

        return result


def apply_config(result: ParseResult, config: ParserConfig) -> ParseResult:
    """Filter a scope-neutral parse result by kind and stamp the module path on it."""
    module_path = tuple(config.module_path)
    blocks = []
    for block in result.blocks:
        if not config.includes(block.block_kind):
            continue
        if block.module_path != module_path:
            block = dataclasses.replace(block, module_path=module_path)
        blocks.append(block)
    return ParseResult(blocks=blocks, errors=list(result.errors))


class ParserRegistry:
    """Registry of Terraform parsers, with optional parse caching."""

    def __init__(self, parsers: Optional[List[TerraformParser]] = None):
        self._parsers: List[TerraformParser] = (
            list(parsers) if parsers is not None else [HCL2Parser()]
        )

    def get_parser(self, file_path: str) -> Optional[TerraformParser]:
        for parser in self._parsers:
            if parser.can_parse(file_path):
                return parser
        return None

    def can_parse(self, file_path: str) -> bool:
        return self.get_parser(file_path) is not None

    def parse_file(
        self,
        file_path: str,
        content: str,
        config: Optional[ParserConfig] = None,
        cache=None,
    ) -> ParseResult:
        """Parse a file, consulting ``cache`` (a ParseCache) unless disabled.

        Cached results are scope-neutral: every block kind, root module
        path. ``config`` is applied to the cached or fresh result.
        """
        config = config or ParserConfig()
        use_cache = cache is not None and config.use_cache

        raw = cache.get(file_path) if use_cache else None
        if raw is None:
            parser = self.get_parser(file_path)
            if parser is None:
                return ParseResult(
                    errors=[
                        ParseError(
                            message=f"No suitable parser found for file: {os.path.basename(file_path)}",
                            file=file_path,
                        )
                    ]
                )
            raw = parser.parse_file(file_path, content, ParserConfig())
            if use_cache:
                cache.set(file_path, raw)

        return apply_config(raw, config)
