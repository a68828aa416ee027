from __future__ import annotations

import logging
import re
from typing import Iterable

from reporter.core.errors import ScriptTagDetectedError
from reporter.domain.entities import MappedFields


logger = logging.getLogger(__name__)

_SCRIPT_RE = re.compile(r"<script\b|</script\s*>", re.IGNORECASE)

_FOR_RE = re.compile(r"{%-?\s*for\s+(\w+)\s+in\s+([a-zA-Z_][\w.]*(?:\s*\|[^%]+)?)\s*-?%}")
_FOR_FILTER_CALL_RE = re.compile(r"{%-?\s*for\s+(\w+)\s*in\s*filter\(\s*([^)]+)\s*\)[^%]+")
_WITH_FILTER_CALL_RE = re.compile(r"{%-?\s*with\s+(\w+)\s*=\s*filter\(\s*([^)]+)\s*\)[^%]+")
_WITH_RE = re.compile(r"{%-?\s*with\s+(\w+)\s*=\s*([^\s%]+)\s*-?%}")
_EXPRESSION_RE = re.compile(r"{{\s*(.*?)\s*}}")
_DIMP_EXPRESSION_RE = re.compile(r"\{\{\s*([^}]+)\s*\}\}")
_IF_RE = re.compile(r"{%-?\s*if\s+(.*?)\s*-?%}")
_SET_RE = re.compile(r"{%-?\s*set\s+(.*?)\s*-?%}")
_CALC_RE = re.compile(r"{%-?\s*calc\s+(.*?)\s*-?%}")
_AGGREGATION_RE = re.compile(r"{%-?\s*(?:count_by|sum_by|avg_by|min_by|max_by)\s+(.*?)\s*-?%}")
_AGGREGATION_ARGS_RE = re.compile(r"^\s*(\S+)\s+if\s+(\S+)\s*==\s*(\S+)\s*$")
_AGGREGATION_BY_ARGS_RE = re.compile(r'^\s*(\S+)\s+by\s+"([^"]+)"\s+if\s+(\S+)\s*==\s*(\S+)')
_DIMP_FOR_RE = re.compile(
    r'{%-?\s*for\s+\w+\s+in\s+([a-zA-Z_][\w.]*)\s*\|\s*(where|sum|count)\s*:\s*"([^"]+)"'
)
_DIMP_ARG_RE = re.compile(r'^(where|sum|count)\s*:\s*"([^"]+)"')
_DOTTED_IDENTIFIER_RE = re.compile(r"\b(?:[a-zA-Z_]\w*)(?:\.(?:[a-zA-Z_]\w*|\d+))+\b")
_INTEGER_RE = re.compile(r"^[+-]?\d+$")

_DIMP_MARKERS = ("|where:", "|sum:", "|count:")


def ensure_no_script_tag(source: str) -> None:
    if _SCRIPT_RE.search(source):
        raise ScriptTagDetectedError()


def clean_path(path: str) -> list[str]:
    """Split a dotted path, dropping list indices.

    ``midaz.accounts.0.name`` and ``midaz.accounts[0].name`` both give
    ``["midaz", "accounts", "name"]``.
    """
    cleaned: list[str] = []
    for part in path.split("."):
        base = part.split("[", 1)[0]
        if _INTEGER_RE.match(base):
            continue
        cleaned.append(base)
    return cleaned


def _is_quoted(value: str) -> bool:
    return len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}


class _FieldCollector:
    # datasource -> table -> ordered, de-duplicated field paths.
    def __init__(self) -> None:
        self.tree: dict[str, dict[str, list[str]]] = {}
        self.variables: dict[str, list[str]] = {}

    def ensure(self, path: list[str]) -> None:
        if len(path) < 2:
            return
        self.tree.setdefault(path[0], {}).setdefault(path[1], [])

    def insert(self, path: list[str], field: str) -> None:
        # Paths deeper than datasource.table become dotted field prefixes;
        # every parent key is recorded ahead of its dotted leaf.
        if len(path) < 2 or not field:
            return
        parts = [*path[2:], field]
        fields = self.tree.setdefault(path[0], {}).setdefault(path[1], [])
        for depth in range(1, len(parts) + 1):
            name = ".".join(parts[:depth])
            if name not in fields:
                fields.append(name)

    def insert_reference(self, parts: list[str]) -> None:
        if len(parts) < 2:
            return
        loop_path = self.variables.get(parts[0])
        if loop_path is not None:
            self.insert(loop_path, parts[1])
        else:
            self.insert(parts[:-1], parts[-1])

    def result(self) -> MappedFields:
        # Tables nobody reads from and bare names like forloop.counter never reach the map.
        return {
            datasource: {table: list(fields) for table, fields in tables.items() if fields}
            for datasource, tables in self.tree.items()
            if any(tables.values())
        }


def _resolve_nested_variables(variables: dict[str, list[str]]) -> None:
    # "for item in account.items" where account is itself a loop variable.
    for _ in range(len(variables)):
        resolved = True
        for name, path in list(variables.items()):
            if not path:
                continue
            parent = variables.get(path[0])
            if parent is not None and path[0] != name:
                variables[name] = [*parent, *path[1:]]
                resolved = False
        if resolved:
            break


def _collect_loop_variables(source: str, collector: _FieldCollector) -> None:
    for variable, expression in _FOR_RE.findall(source):
        base = expression.split("|", 1)[0].strip()
        path = clean_path(base)
        collector.variables[variable] = path[:3] if len(path) > 2 else path
    _resolve_nested_variables(collector.variables)


def _collect_filter_call_params(
    matches: Iterable[tuple[str, str]], collector: _FieldCollector
) -> None:
    for variable, args in matches:
        arg_parts = args.split(",")
        path = clean_path(arg_parts[0].strip())
        if len(path) < 2:
            continue
        collector.variables[variable] = [path[0], path[1]]
        for param in arg_parts[1:]:
            clean_param = param.strip().strip("\"' ")
            if not clean_param:
                continue
            param_path = clean_path(clean_param)
            if len(param_path) < 2:
                collector.insert(path, clean_param)
            else:
                collector.insert_reference(param_path)


def _expression_field_paths(expression: str) -> list[str]:
    paths: list[str] = []
    for part in expression.split("|"):
        for sub in part.strip().split(":"):
            sub = sub.strip()
            if '"' in sub or "'" in sub:
                continue
            if "." in sub:
                paths.append(sub)
    return paths


def _collect_expressions(source: str, collector: _FieldCollector) -> None:
    for expression in _EXPRESSION_RE.findall(source):
        if any(marker in expression for marker in _DIMP_MARKERS):
            # datasource.table|where:"..." is handled by the DIMP pass.
            base = clean_path(expression.split("|", 1)[0].strip())
            if len(base) == 2:
                continue
        for field_path in _expression_field_paths(expression):
            collector.insert_reference(clean_path(field_path))


def _dotted_identifiers(expression: str) -> list[str]:
    results: list[str] = []
    for match in _DOTTED_IDENTIFIER_RE.findall(expression):
        cleaned = [part for part in match.split(".") if not _INTEGER_RE.match(part)]
        if len(cleaned) > 1:
            results.append(".".join(cleaned))
    return results


def _collect_tag_identifiers(pattern: re.Pattern[str], source: str, collector: _FieldCollector) -> None:
    for expression in pattern.findall(source):
        for field_path in _dotted_identifiers(expression):
            collector.insert_reference(clean_path(field_path))


def _aggregation_args(expression: str) -> list[str]:
    match = _AGGREGATION_ARGS_RE.match(expression)
    if match:
        return list(match.groups())
    match = _AGGREGATION_BY_ARGS_RE.match(expression)
    if match:
        return list(match.groups())
    return []


def _collect_aggregations(source: str, collector: _FieldCollector) -> None:
    for expression in _AGGREGATION_RE.findall(source):
        args = _aggregation_args(expression)
        if not args:
            continue
        main_path = clean_path(args[0].strip())
        if len(main_path) < 2:
            continue
        collector.variables[main_path[1]] = main_path
        for arg in args[1:]:
            if _is_quoted(arg.strip()):
                continue
            arg_path = clean_path(arg)
            if len(arg_path) < 2:
                collector.insert(main_path, arg)
            else:
                collector.insert_reference(arg_path)


def _insert_filter_arg(collector: _FieldCollector, base: list[str], kind: str, arg: str) -> None:
    # where/count take "field:value"; sum takes "field".
    if kind in {"where", "count"}:
        colon = arg.find(":")
        if colon > 0:
            collector.insert(base[:2], arg[:colon])
    elif kind == "sum":
        field = arg.strip("\"' ")
        if field:
            collector.insert(base[:2], field)


def _collect_dimp_filters(source: str, collector: _FieldCollector) -> None:
    for expression in _DIMP_EXPRESSION_RE.findall(source):
        if not any(marker in expression for marker in _DIMP_MARKERS):
            continue
        parts = expression.split("|")
        collection = clean_path(parts[0].strip())
        if not collection:
            continue
        base = collector.variables.get(collection[0])
        if base is None:
            if len(collection) < 2:
                continue
            base = collection[:2]
        collector.ensure(base)
        for part in parts[1:]:
            match = _DIMP_ARG_RE.match(part.strip())
            if match:
                _insert_filter_arg(collector, base, match.group(1), match.group(2))

    for collection, kind, arg in _DIMP_FOR_RE.findall(source):
        parts = clean_path(collection)
        if len(parts) < 2:
            continue
        collector.ensure(parts[:2])
        _insert_filter_arg(collector, parts[:2], kind, arg)


def extract_mapped_fields(template: str | bytes) -> MappedFields:
    """Return ``datasource -> table -> [field, ...]`` referenced by a template.

    Raises ScriptTagDetectedError before any parsing when the template embeds
    a script element.
    """
    source = template.decode("utf-8", errors="replace") if isinstance(template, bytes) else template
    ensure_no_script_tag(source)

    collector = _FieldCollector()
    _collect_loop_variables(source, collector)
    _collect_filter_call_params(_WITH_FILTER_CALL_RE.findall(source), collector)
    _collect_filter_call_params(_WITH_RE.findall(source), collector)
    _collect_filter_call_params(_FOR_FILTER_CALL_RE.findall(source), collector)
    _collect_expressions(source, collector)
    _collect_tag_identifiers(_IF_RE, source, collector)
    _collect_tag_identifiers(_SET_RE, source, collector)
    _collect_aggregations(source, collector)
    _collect_tag_identifiers(_CALC_RE, source, collector)
    _collect_dimp_filters(source, collector)

    fields = collector.result()
    logger.debug("template_fields_extracted datasources=%s", ",".join(sorted(fields)))
    return fields
