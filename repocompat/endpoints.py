"""API endpoint extraction and backward-compatibility checks.

Endpoints are read from Next.js-style route files. Extraction is a strategy
(:class:`EndpointExtractor`) so other frameworks can plug in their own.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .models import (
    ApiBreakingChange,
    ApiCompatibility,
    ApiDeprecation,
    AuthRequirement,
    CompatibilityFinding,
    EndpointCompatibilityResult,
    EndpointDescriptor,
    ParameterInfo,
    ProjectStructure,
    ResponseSchema,
)

logger = logging.getLogger(__name__)

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")

COMPATIBLE_VERSIONS = ["1.0.0", "1.1.0", "1.2.0", "2.0.0"]
NEXT_MAJOR_ONLY = ["2.0.0"]

RISK_ORDER = {"low": 0, "medium": 1, "high": 2}

_APP_ROUTE_RE = re.compile(r"(?:^|/)app/api(/.*)?/route\.(?:ts|js)$")
_PAGES_ROUTE_RE = re.compile(r"(?:^|/)pages/api(/.*)\.(?:ts|js)$")
_HANDLER_RE = re.compile(
    r"export\s+(?:async\s+)?function\s+(%s)\b|export\s+const\s+(%s)\s*="
    % ("|".join(HTTP_METHODS), "|".join(HTTP_METHODS))
)
_PAGES_METHOD_RE = re.compile(r"method\s*={2,3}\s*['\"](%s)['\"]" % "|".join(HTTP_METHODS))
_QUERY_RE = re.compile(r"searchParams\.get\(\s*['\"]([\w-]+)['\"]\s*\)")
_BODY_RE = re.compile(r"const\s*\{([^}]*)\}\s*=\s*await\s+\w+\.json\(\)")
_HEADER_RE = re.compile(r"headers\.get\(\s*['\"]([\w-]+)['\"]\s*\)")
_STATUS_RE = re.compile(r"status\s*:\s*(\d{3})")
_CONTENT_TYPE_RE = re.compile(r"['\"]?Content-Type['\"]?\s*:\s*['\"]([^'\"]+)['\"]", re.IGNORECASE)
_JSON_KEYS_RE = re.compile(r"\.json\(\s*\{([^}]*)\}")

BEARER_MARKERS = ("authorization", "verifyToken", "getSession", "requireAuth", "Bearer")


def route_path(rel_path: str) -> Optional[str]:
    """URL path for a route file, ``[id]`` segments rendered as ``{id}``."""
    rel = PurePosixPath(rel_path).as_posix()
    match = _APP_ROUTE_RE.search(rel)
    if match:
        tail = match.group(1) or ""
    else:
        match = _PAGES_ROUTE_RE.search(rel)
        if not match:
            return None
        tail = match.group(1)
        if tail.endswith("/index"):
            tail = tail[: -len("/index")]
    segments = []
    for segment in tail.split("/"):
        if not segment or (segment.startswith("(") and segment.endswith(")")):
            continue
        name = segment.strip("[]").lstrip(".")
        segments.append("{%s}" % name if segment.startswith("[") else segment)
    return "/api" + ("/" + "/".join(segments) if segments else "")


def path_parameters(path: str) -> List[ParameterInfo]:
    return [
        ParameterInfo(name=name, type="string", required=True, location="path")
        for name in re.findall(r"\{([^}]+)\}", path)
    ]


def is_route_file(rel_path: str) -> bool:
    return route_path(rel_path) is not None


def route_sources(structure: ProjectStructure) -> Dict[str, str]:
    """Read the route files of an on-disk snapshot into ``{path: source}``."""
    sources: Dict[str, str] = {}
    if not structure.root:
        return sources
    for rel in structure.files:
        if not is_route_file(rel):
            continue
        try:
            sources[rel] = (Path(structure.root) / rel).read_text(encoding="utf-8", errors="ignore")
        except OSError as exc:
            logger.warning("Could not read route file %s: %s", rel, exc)
    return sources


# ===================================================================
# Extraction strategies
# ===================================================================

class EndpointExtractor(ABC):
    """Turns route files into endpoint descriptors."""

    @abstractmethod
    def extract(self, rel_path: str, source: str) -> List[EndpointDescriptor]:
        ...


class RouteConventionExtractor(EndpointExtractor):
    """Reads exported method handlers and their bodies heuristically."""

    def extract(self, rel_path: str, source: str) -> List[EndpointDescriptor]:
        path = route_path(rel_path)
        if path is None:
            return []
        endpoints = []
        for method, body in self._handlers(rel_path, source):
            endpoints.append(EndpointDescriptor(
                path=path,
                method=method,
                parameters=path_parameters(path) + self._parameters(body),
                response_schema=self._response(body),
                auth=self._auth(body),
                deprecated="@deprecated" in body,
                source_file=rel_path,
            ))
        return endpoints

    @staticmethod
    def _handlers(rel_path: str, source: str) -> List[Tuple[str, str]]:
        """``(METHOD, handler text)`` pairs in source order."""
        if _APP_ROUTE_RE.search(rel_path):
            starts: List[Tuple[int, str]] = []
            for match in _HANDLER_RE.finditer(source):
                start = match.start()
                # a doc comment directly above the handler belongs to it
                doc_start = source.rfind("/**", 0, start)
                doc_end = source.find("*/", doc_start) if doc_start != -1 else -1
                if doc_end != -1 and doc_end < start and not source[doc_end + 2:start].strip():
                    start = doc_start
                starts.append((start, match.group(1) or match.group(2)))
            handlers = []
            for index, (start, method) in enumerate(starts):
                end = starts[index + 1][0] if index + 1 < len(starts) else len(source)
                handlers.append((method, source[start:end]))
            return handlers
        methods = list(dict.fromkeys(_PAGES_METHOD_RE.findall(source))) or ["GET"]
        return [(method, source) for method in methods]

    @staticmethod
    def _parameters(body: str) -> List[ParameterInfo]:
        params: List[ParameterInfo] = []
        seen = set()
        for name in _QUERY_RE.findall(body):
            if name not in seen:
                seen.add(name)
                params.append(ParameterInfo(name=name, type="string", required=False, location="query"))
        for group in _BODY_RE.findall(body):
            for raw in group.split(","):
                raw = raw.strip()
                if not raw or raw.startswith("..."):
                    continue
                name = re.split(r"[:=]", raw, maxsplit=1)[0].strip()
                if name and name not in seen:
                    seen.add(name)
                    params.append(ParameterInfo(
                        name=name, type="any", required="=" not in raw, location="body",
                    ))
        for name in _HEADER_RE.findall(body):
            if name.lower() == "authorization" or name in seen:
                continue
            seen.add(name)
            params.append(ParameterInfo(name=name, type="string", required=False, location="header"))
        return params

    @staticmethod
    def _auth(body: str) -> AuthRequirement:
        if "Basic " in body:
            return AuthRequirement(required=True, scheme="basic")
        if "x-api-key" in body.lower():
            return AuthRequirement(required=True, scheme="api-key")
        if any(marker in body for marker in BEARER_MARKERS):
            return AuthRequirement(required=True, scheme="bearer")
        return AuthRequirement()

    @staticmethod
    def _response(body: str) -> ResponseSchema:
        statuses = [int(s) for s in _STATUS_RE.findall(body)]
        success = [s for s in statuses if 200 <= s < 300]
        content_type = "application/json"
        if "new Response(" in body:
            match = _CONTENT_TYPE_RE.search(body)
            if match:
                content_type = match.group(1)
        schema: Dict[str, List[str]] = {}
        match = _JSON_KEYS_RE.search(body)
        if match:
            keys = []
            for raw in match.group(1).split(","):
                key = raw.split(":", 1)[0].strip().strip("'\"")
                if re.match(r"^[A-Za-z_$][\w$]*$", key):
                    keys.append(key)
            schema = {"keys": keys}
        return ResponseSchema(
            status_code=success[0] if success else 200,
            content_type=content_type,
            schema=schema,
        )


class StubRouteExtractor(EndpointExtractor):
    """Fixed GET (public) and POST (bearer) shapes for every route file."""

    def extract(self, rel_path: str, source: str) -> List[EndpointDescriptor]:
        path = route_path(rel_path)
        if path is None:
            return []
        return [
            EndpointDescriptor(path=path, method="GET", source_file=rel_path),
            EndpointDescriptor(
                path=path,
                method="POST",
                auth=AuthRequirement(required=True, scheme="bearer"),
                source_file=rel_path,
            ),
        ]


# ===================================================================
# Validator
# ===================================================================

class EndpointCompatibilityValidator:
    """Pairs endpoints by (path, method) and reports what breaks clients."""

    def __init__(self, extractor: Optional[EndpointExtractor] = None) -> None:
        self.extractor = extractor or RouteConventionExtractor()

    def extract_endpoints(self, files: Mapping[str, str]) -> List[EndpointDescriptor]:
        endpoints: List[EndpointDescriptor] = []
        for rel_path in sorted(files):
            endpoints.extend(self.extractor.extract(rel_path, files[rel_path]))
        return endpoints

    def compare_endpoint(
        self,
        target: EndpointDescriptor,
        base: Optional[EndpointDescriptor],
    ) -> EndpointCompatibilityResult:
        result = EndpointCompatibilityResult(endpoint=target.path, method=target.method)
        if base is None:
            result.recommendations.append("Document new endpoint in API documentation")
            return result

        for impact, description, migration in _parameter_changes(target.parameters, base.parameters):
            self._add_break(result, target, "parameter-changed", description, migration, "high")
            result.migration_required = True

        old, new = base.response_schema, target.response_schema
        if old.status_code != new.status_code or old.content_type != new.content_type:
            self._add_break(
                result, target, "modified", "Response schema changed",
                "Update client code to handle new response format", "medium",
            )
        elif old.schema != new.schema:
            result.recommendations.append("Review response payload changes with API consumers")

        if base.auth.required != target.auth.required or base.auth.scheme != target.auth.scheme:
            self._add_break(
                result, target, "modified", "Authentication requirements changed",
                "Update authentication flow in client applications", "high",
            )
            result.migration_required = True

        if target.deprecated and not base.deprecated:
            result.deprecations.append(ApiDeprecation(
                endpoint=target.path,
                method=target.method,
                description="Endpoint marked as deprecated",
                migration=f"Migrate clients away from '{target.key}' before it is removed",
            ))
        return result

    @staticmethod
    def _add_break(
        result: EndpointCompatibilityResult,
        target: EndpointDescriptor,
        change_type: str,
        description: str,
        migration: str,
        impact: str,
    ) -> None:
        result.breaking_changes.append(ApiBreakingChange(
            endpoint=target.path,
            method=target.method,
            change_type=change_type,
            description=description,
            impact=impact,
            migration=migration,
        ))
        result.is_compatible = False
        if RISK_ORDER[impact] > RISK_ORDER[result.risk_level]:
            result.risk_level = impact

    @staticmethod
    def removed_endpoint(base: EndpointDescriptor) -> EndpointCompatibilityResult:
        return EndpointCompatibilityResult(
            endpoint=base.path,
            method=base.method,
            is_compatible=False,
            breaking_changes=[ApiBreakingChange(
                endpoint=base.path,
                method=base.method,
                change_type="removed",
                description=f"Endpoint '{base.key}' was removed",
                impact="high",
                migration=f"Remove calls to '{base.key}' or move them to a replacement endpoint",
            )],
            risk_level="high",
            migration_required=True,
        )

    @staticmethod
    def aggregate(results: Iterable[EndpointCompatibilityResult]) -> ApiCompatibility:
        compatibility = ApiCompatibility()
        for result in results:
            compatibility.breaking_changes.extend(result.breaking_changes)
            compatibility.deprecations.extend(result.deprecations)
            if not result.is_compatible:
                compatibility.backward_compatible = False
        compatibility.version_compatibility = list(
            NEXT_MAJOR_ONLY if compatibility.breaking_changes else COMPATIBLE_VERSIONS
        )
        return compatibility

    def validate(
        self,
        target_files: Mapping[str, str],
        base_files: Optional[Mapping[str, str]] = None,
    ) -> ApiCompatibility:
        """Compare the endpoint surface of *target_files* against *base_files*."""
        target_endpoints = self.extract_endpoints(target_files)
        base_endpoints = {e.key: e for e in self.extract_endpoints(base_files or {})}
        results = [self.compare_endpoint(e, base_endpoints.get(e.key)) for e in target_endpoints]
        target_keys = {e.key for e in target_endpoints}
        for key in sorted(set(base_endpoints) - target_keys):
            results.append(self.removed_endpoint(base_endpoints[key]))
        logger.debug(
            "Validated %d target endpoints against %d base endpoints",
            len(target_endpoints), len(base_endpoints),
        )
        return self.aggregate(results)

    @staticmethod
    def findings(api: ApiCompatibility) -> List[CompatibilityFinding]:
        out: List[CompatibilityFinding] = []
        for change in api.breaking_changes:
            if change.description == "Authentication requirements changed":
                category = "auth-flow"
            elif change.description == "Response schema changed":
                category = "data-format"
            else:
                category = "breaking-change"
            out.append(CompatibilityFinding(
                category=category,
                severity=change.impact,
                description=f"{change.method} {change.endpoint}: {change.description}",
                migration_guidance=change.migration,
            ))
        for deprecation in api.deprecations:
            out.append(CompatibilityFinding(
                category="deprecation",
                severity="low",
                description=f"{deprecation.method} {deprecation.endpoint}: {deprecation.description}",
                migration_guidance=deprecation.migration,
            ))
        return out


def _parameter_changes(
    new_params: List[ParameterInfo],
    old_params: List[ParameterInfo],
) -> List[Tuple[str, str, str]]:
    """Breaking ``(impact, description, migration)`` entries for a parameter diff."""
    changes: List[Tuple[str, str, str]] = []
    new_by_name = {p.name: p for p in new_params}
    old_by_name = {p.name: p for p in old_params}
    for old in old_params:
        if old.name not in new_by_name and old.required:
            changes.append((
                "breaking",
                f"Required parameter '{old.name}' was removed",
                f"Remove '{old.name}' parameter from API calls",
            ))
    for new in new_params:
        if new.name not in old_by_name and new.required:
            changes.append((
                "breaking",
                f"New required parameter '{new.name}' was added",
                f"Add '{new.name}' parameter to API calls",
            ))
    for new in new_params:
        old = old_by_name.get(new.name)
        if old is not None and old.type != new.type:
            changes.append((
                "breaking",
                f"Parameter '{new.name}' type changed from {old.type} to {new.type}",
                f"Update '{new.name}' parameter type in API calls",
            ))
    return changes
