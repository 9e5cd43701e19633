"""Tests for endpoint extraction and API compatibility validation."""

from pathlib import Path

import pytest

from repocompat.endpoints import (
    COMPATIBLE_VERSIONS,
    EndpointCompatibilityValidator,
    RouteConventionExtractor,
    StubRouteExtractor,
    route_path,
    route_sources,
)
from repocompat.models import AuthRequirement, EndpointDescriptor, ParameterInfo, ResponseSchema

USERS_ROUTE = "src/app/api/users/[id]/route.ts"


def _route_files(project: Path):
    return {
        str(p.relative_to(project).as_posix()): p.read_text()
        for p in project.rglob("route.ts")
    }


@pytest.mark.parametrize(
    "rel_path, expected",
    [
        ("src/app/api/users/[id]/route.ts", "/api/users/{id}"),
        ("app/api/route.ts", "/api"),
        ("app/api/v1/items/route.js", "/api/v1/items"),
        ("app/api/(internal)/jobs/route.ts", "/api/jobs"),
        ("pages/api/orders/[orderId].ts", "/api/orders/{orderId}"),
        ("pages/api/health/index.js", "/api/health"),
        ("src/services/userService.ts", None),
    ],
)
def test_route_path(rel_path, expected):
    assert route_path(rel_path) == expected


class TestRouteConventionExtractor:
    """Handlers, parameters, auth and responses from route source."""

    @pytest.fixture
    def endpoints(self, base_project_path: Path):
        files = _route_files(base_project_path)
        return {e.key: e for e in EndpointCompatibilityValidator().extract_endpoints(files)}

    def test_methods(self, endpoints):
        assert set(endpoints) == {"GET /api/users/{id}", "POST /api/users/{id}"}

    def test_get_parameters_and_response(self, endpoints):
        get = endpoints["GET /api/users/{id}"]

        params = {p.name: p for p in get.parameters}
        assert params["id"].location == "path" and params["id"].required
        assert params["include"].location == "query" and not params["include"].required
        assert get.auth.required is False
        assert get.response_schema.status_code == 200
        assert get.response_schema.schema == {"keys": ["id", "include"]}
        assert get.source_file == USERS_ROUTE

    def test_post_body_and_auth(self, endpoints):
        post = endpoints["POST /api/users/{id}"]

        body = [p.name for p in post.parameters if p.location == "body"]
        assert body == ["name", "email"]
        assert all(p.required for p in post.parameters if p.location == "body")
        assert post.auth == AuthRequirement(required=True, scheme="bearer")
        assert post.response_schema.status_code == 201

    def test_deprecated_handler(self):
        source = (
            "export async function GET() { return Response.json({ ok: true }); }\n"
            "/** @deprecated use GET */\n"
            "export async function DELETE(request) {\n"
            "  const key = request.headers.get('x-api-key');\n"
            "  return new Response(null, { status: 204 });\n"
            "}\n"
        )
        endpoints = RouteConventionExtractor().extract("app/api/items/route.js", source)

        by_method = {e.method: e for e in endpoints}
        assert by_method["GET"].deprecated is False
        assert by_method["DELETE"].deprecated is True
        assert by_method["DELETE"].auth.scheme == "api-key"
        assert by_method["DELETE"].response_schema.status_code == 204

    def test_pages_route_methods(self):
        source = (
            "export default function handler(req, res) {\n"
            "  if (req.method === 'POST') { return res.status(201).json({}); }\n"
            "  if (req.method === 'GET') { return res.json([]); }\n"
            "}\n"
        )
        endpoints = RouteConventionExtractor().extract("pages/api/items.ts", source)
        assert [e.method for e in endpoints] == ["POST", "GET"]

    def test_non_route_file_yields_nothing(self):
        assert RouteConventionExtractor().extract("src/lib/api.ts", "export function GET() {}") == []


def test_stub_extractor_shapes():
    endpoints = StubRouteExtractor().extract("app/api/things/route.ts", "")

    assert [(e.method, e.auth.required) for e in endpoints] == [("GET", False), ("POST", True)]
    assert all(e.path == "/api/things" for e in endpoints)


def _endpoint(params=None, **kwargs):
    return EndpointDescriptor(path="/api/users", method="POST", parameters=params or [], **kwargs)


class TestCompareEndpoint:
    """Pairwise endpoint rules."""

    validator = EndpointCompatibilityValidator()

    def test_new_endpoint_is_compatible(self):
        result = self.validator.compare_endpoint(_endpoint(), None)

        assert result.is_compatible
        assert result.recommendations == ["Document new endpoint in API documentation"]

    def test_removed_required_parameter_breaks(self):
        base = _endpoint([ParameterInfo("email", required=True, location="body")])
        result = self.validator.compare_endpoint(_endpoint(), base)

        assert result.is_compatible is False
        assert result.risk_level == "high"
        assert result.migration_required
        change = result.breaking_changes[0]
        assert change.change_type == "parameter-changed"
        assert change.description == "Required parameter 'email' was removed"
        assert change.migration == "Remove 'email' parameter from API calls"

    def test_removed_optional_parameter_is_fine(self):
        base = _endpoint([ParameterInfo("page", required=False)])
        assert self.validator.compare_endpoint(_endpoint(), base).is_compatible

    def test_parameter_type_change_breaks(self):
        base = _endpoint([ParameterInfo("age", type="number")])
        target = _endpoint([ParameterInfo("age", type="string")])

        result = self.validator.compare_endpoint(target, base)

        assert result.breaking_changes[0].description == "Parameter 'age' type changed from number to string"

    def test_response_status_change_is_medium(self):
        result = self.validator.compare_endpoint(
            _endpoint(response_schema=ResponseSchema(status_code=200)),
            _endpoint(response_schema=ResponseSchema(status_code=201)),
        )

        assert result.risk_level == "medium"
        assert result.breaking_changes[0].description == "Response schema changed"
        assert result.migration_required is False

    def test_auth_change_is_high(self):
        result = self.validator.compare_endpoint(
            _endpoint(auth=AuthRequirement(True, "bearer")), _endpoint(),
        )

        assert result.risk_level == "high"
        assert result.breaking_changes[0].migration == "Update authentication flow in client applications"

    def test_newly_deprecated(self):
        result = self.validator.compare_endpoint(_endpoint(deprecated=True), _endpoint())

        assert result.is_compatible
        assert result.deprecations[0].description == "Endpoint marked as deprecated"


class TestValidate:
    """Whole-surface validation."""

    def test_fixture_projects(self, base_project_path, target_project_path):
        validator = EndpointCompatibilityValidator()
        api = validator.validate(_route_files(target_project_path), _route_files(base_project_path))

        assert api.backward_compatible is False
        assert len(api.breaking_changes) == 1
        change = api.breaking_changes[0]
        assert (change.method, change.endpoint) == ("POST", "/api/users/{id}")
        assert change.description == "New required parameter 'role' was added"
        assert api.version_compatibility == ["2.0.0"]

        findings = validator.findings(api)
        assert [f.category for f in findings] == ["breaking-change"]
        assert findings[0].migration_guidance == "Add 'role' parameter to API calls"

    def test_identical_surfaces(self, base_project_path):
        files = _route_files(base_project_path)
        api = EndpointCompatibilityValidator().validate(files, files)

        assert api.backward_compatible
        assert api.breaking_changes == []
        assert api.version_compatibility == COMPATIBLE_VERSIONS

    def test_removed_endpoint_breaks(self, base_project_path):
        api = EndpointCompatibilityValidator().validate({}, _route_files(base_project_path))

        assert api.backward_compatible is False
        assert {c.change_type for c in api.breaking_changes} == {"removed"}
        assert len(api.breaking_changes) == 2

    def test_no_base(self, target_project_path):
        api = EndpointCompatibilityValidator().validate(_route_files(target_project_path))

        assert api.backward_compatible
        assert api.version_compatibility == COMPATIBLE_VERSIONS

    def test_auth_finding_category(self):
        validator = EndpointCompatibilityValidator()
        api = validator.aggregate([
            validator.compare_endpoint(_endpoint(auth=AuthRequirement(True, "basic")), _endpoint()),
        ])

        assert [f.category for f in validator.findings(api)] == ["auth-flow"]


def test_route_sources_reads_from_snapshot(extractor, base_project_path: Path):
    structure = extractor.extract(base_project_path)

    sources = route_sources(structure)

    assert list(sources) == [USERS_ROUTE]
    assert "export async function POST" in sources[USERS_ROUTE]
