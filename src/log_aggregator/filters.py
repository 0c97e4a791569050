"""Compile the optional pattern strings of a kube_log request into matchers.

Compilation never fails the operation: an empty or absent pattern matches
everything, and a pattern that is not a valid regular expression is matched
as a literal substring instead.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Pattern

from models import JsonPathFilter, KubeLogRequest

_MISSING = object()


def compile_pattern(expr: Optional[str]) -> Optional[Pattern[str]]:
    """Compile ``expr`` as a regex, falling back to an escaped literal.

    Returns None for an absent/blank pattern, meaning "match everything".
    """
    if not expr or not isinstance(expr, str) or not expr.strip():
        return None
    try:
        return re.compile(expr)
    except re.error:
        return re.compile(re.escape(expr))


def pattern_matches(pattern: Optional[Pattern[str]], text: str) -> bool:
    if pattern is None:
        return True
    return pattern.search(text or "") is not None


def resolve_json_path(obj: Any, path: str) -> Any:
    """Walk a dot separated path through parsed JSON.

    Integer segments index into lists. Returns a private sentinel when the
    path does not exist so that a missing field never equals "None".
    """
    if not path:
        return _MISSING
    current = obj
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            index = int(part)
            if index >= len(current) or index < -len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _stringify(value: Any) -> str:
    # JSON scalars compare the way they are written in the log line
    if value is True:
        return "true"
    if value is False:
        return "false"
    if value is None:
        return "null"
    return str(value)


@dataclass(frozen=True)
class CompiledJsonPathFilter:
    path: str
    equals: Optional[str] = None
    regex: Optional[Pattern[str]] = None

    @classmethod
    def compile(cls, spec: JsonPathFilter) -> "CompiledJsonPathFilter":
        return cls(path=spec.path, equals=spec.equals, regex=compile_pattern(spec.regex))

    def matches(self, payload: Any) -> bool:
        value = resolve_json_path(payload, self.path)
        if value is _MISSING:
            return False
        text = _stringify(value)
        if self.equals is not None and text != str(self.equals):
            return False
        if self.regex is not None and self.regex.search(text) is None:
            return False
        return True


@dataclass(frozen=True)
class LogFilters:
    pod: Optional[Pattern[str]] = None
    container: Optional[Pattern[str]] = None
    message: Optional[Pattern[str]] = None
    exclude: Optional[Pattern[str]] = None
    json_paths: List[CompiledJsonPathFilter] = field(default_factory=list)

    @classmethod
    def build(
        cls,
        pod_pattern: Optional[str] = None,
        container_pattern: Optional[str] = None,
        message_pattern: Optional[str] = None,
        exclude_pattern: Optional[str] = None,
        json_path_filters: Optional[Iterable[JsonPathFilter]] = None,
    ) -> "LogFilters":
        return cls(
            pod=compile_pattern(pod_pattern),
            container=compile_pattern(container_pattern),
            message=compile_pattern(message_pattern),
            exclude=compile_pattern(exclude_pattern),
            json_paths=[
                CompiledJsonPathFilter.compile(spec)
                for spec in (json_path_filters or [])
                if spec.path
            ],
        )

    @classmethod
    def from_request(cls, request: KubeLogRequest) -> "LogFilters":
        return cls.build(
            pod_pattern=request.pod_pattern,
            container_pattern=request.container_pattern,
            message_pattern=request.message_pattern,
            exclude_pattern=request.exclude_pattern,
            json_path_filters=request.json_path_filters,
        )

    def pod_selected(self, pod_name: str) -> bool:
        return pattern_matches(self.pod, pod_name)

    def container_selected(self, container: str) -> bool:
        return pattern_matches(self.container, container)

    def message_selected(self, message: str) -> bool:
        if not pattern_matches(self.message, message):
            return False
        if self.exclude is not None and self.exclude.search(message) is not None:
            return False
        return True

    def payload_selected(self, payload: Any) -> bool:
        return all(jp.matches(payload) for jp in self.json_paths)
