"""Tests for api_workbench.models.

Tests cover:
- Enum helpers (body support, content types)
- Value object coercion and secret masking in repr
- Entity identity assignment and mutation methods
- ExecutionResponse outcome validation
"""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from api_workbench.models import (
    REDACTED,
    ApiRequest,
    AuthConfig,
    AuthType,
    BodyType,
    Collection,
    Environment,
    EnvironmentVariable,
    ErrorKind,
    ExecutionResponse,
    Header,
    HistoryFilter,
    HistoryRecord,
    HttpMethod,
    Page,
    PageRequest,
    QueryParam,
    RuntimeConfig,
)
from tests.conftest import make_request


class TestEnums:
    @pytest.mark.parametrize("method", [HttpMethod.POST, HttpMethod.PUT, HttpMethod.PATCH])
    def test_body_methods(self, method: HttpMethod) -> None:
        assert method.supports_body

    @pytest.mark.parametrize(
        "method",
        [HttpMethod.GET, HttpMethod.DELETE, HttpMethod.HEAD, HttpMethod.OPTIONS],
    )
    def test_bodyless_methods(self, method: HttpMethod) -> None:
        assert not method.supports_body

    def test_body_type_content_types(self) -> None:
        assert BodyType.JSON.content_type == "application/json"
        assert BodyType.XML.content_type == "application/xml"
        assert BodyType.FORM_DATA.content_type == "application/x-www-form-urlencoded"
        assert BodyType.RAW.content_type == "text/plain"
        assert BodyType.BINARY.content_type == "application/octet-stream"

    def test_binary_is_not_textual(self) -> None:
        assert BodyType.JSON.is_textual
        assert not BodyType.BINARY.is_textual
        assert not BodyType.NONE.is_textual

    def test_error_kind_values(self) -> None:
        assert {k.value for k in ErrorKind} == {
            "timeout", "connection-refused", "tls-error", "cancelled", "unknown",
        }


class TestValueObjects:
    def test_header_none_value_becomes_empty(self) -> None:
        assert Header(key="X-Empty", value=None).value == ""

    def test_query_param_defaults_enabled(self) -> None:
        assert QueryParam(key="page", value="1").enabled

    def test_header_is_frozen(self) -> None:
        header = Header.of("Accept", "application/json")
        with pytest.raises(ValidationError):
            header.value = "text/plain"

    def test_environment_variable_coerces_yaml_scalars(self) -> None:
        assert EnvironmentVariable(name="port", value=8080).value == "8080"
        assert EnvironmentVariable(name="debug", value=True).value == "true"

    def test_secret_variable_masked_in_repr(self) -> None:
        var = EnvironmentVariable(name="token", value="s3cr3t", secret=True)
        assert "s3cr3t" not in repr(var)
        assert REDACTED in repr(var)
        assert var.value == "s3cr3t"

    def test_plain_variable_shown_in_repr(self) -> None:
        var = EnvironmentVariable(name="host", value="example.com")
        assert "example.com" in repr(var)


class TestAuthConfig:
    def test_secrets_not_in_repr(self) -> None:
        config = AuthConfig(
            bearer_token="tok-1",
            basic_username="alice",
            basic_password="pw-2",
            api_key="key-3",
            oauth2_access_token="oauth-4",
        )
        text = repr(config) + str(config)
        for secret in ("tok-1", "pw-2", "key-3", "oauth-4"):
            assert secret not in text
        assert "alice" in text

    def test_basic_auth_header_computed(self) -> None:
        config = AuthConfig.basic("user", "pass")
        # base64("user:pass")
        assert config.basic_auth_header == "Basic dXNlcjpwYXNz"

    def test_basic_auth_header_none_when_incomplete(self) -> None:
        assert AuthConfig(basic_username="user").basic_auth_header is None

    def test_basic_auth_header_allows_empty_password(self) -> None:
        # base64("user:")
        assert AuthConfig.basic("user", "").basic_auth_header == "Basic dXNlcjo="

    def test_api_key_location_normalized(self) -> None:
        assert AuthConfig.api_key_auth("k", location=" QUERY ").api_key_location == "query"

    def test_redacted_masks_secrets(self) -> None:
        assert AuthConfig.bearer("tok").redacted() == {"bearer_token": REDACTED}

    def test_redacted_keeps_api_key_placement(self) -> None:
        redacted = AuthConfig.api_key_auth("k", header_name="X-Key").redacted()
        assert redacted == {
            "api_key": REDACTED,
            "api_key_header_name": "X-Key",
            "api_key_location": "header",
        }


class TestApiRequest:
    def test_defaults(self) -> None:
        request = make_request()
        assert request.id is None
        assert request.method == HttpMethod.GET
        assert request.body_type == BodyType.NONE
        assert request.auth_type == AuthType.NONE
        assert request.headers == ()

    def test_method_case_insensitive(self) -> None:
        assert make_request(method="post").method == HttpMethod.POST

    def test_null_body_and_auth_types_default(self) -> None:
        request = make_request(body_type=None, auth_type=None)
        assert request.body_type == BodyType.NONE
        assert request.auth_type == AuthType.NONE

    def test_headers_accept_mapping(self) -> None:
        request = make_request(headers={"Accept": "application/json", "X-Trace": "1"})
        assert [(h.key, h.value) for h in request.headers] == [
            ("Accept", "application/json"),
            ("X-Trace", "1"),
        ]

    def test_assign_id_once(self) -> None:
        request = make_request()
        request.assign_id(7)
        assert request.id == 7
        with pytest.raises(RuntimeError, match="ID already assigned"):
            request.assign_id(8)

    @pytest.mark.parametrize("factory", [make_request, lambda: Environment(name="dev")])
    def test_id_not_directly_assignable(self, factory) -> None:
        entity = factory()
        with pytest.raises(AttributeError, match="assign_id"):
            entity.id = 3
        entity.assign_id(4)
        with pytest.raises(AttributeError):
            entity.id = 9
        assert entity.id == 4

    def test_mutators_bump_updated_at(self) -> None:
        request = make_request()
        request.updated_at = datetime(2020, 1, 1, tzinfo=timezone.utc)
        request.set_headers([Header.of("Accept", "*/*")])
        assert request.updated_at > datetime(2020, 1, 1, tzinfo=timezone.utc)
        assert request.enabled_headers == [Header.of("Accept", "*/*")]

    def test_has_body_requires_body_method(self) -> None:
        assert not make_request(method="GET", body="{}", body_type=BodyType.JSON).has_body
        assert make_request(method="POST", body="{}", body_type=BodyType.JSON).has_body

    def test_has_body_false_for_empty_payload(self) -> None:
        assert not make_request(method="POST", body="", body_type=BodyType.JSON).has_body

    def test_enabled_query_params(self) -> None:
        request = make_request(
            query_params=[
                QueryParam(key="a", value="1"),
                QueryParam(key="b", value="2", enabled=False),
            ]
        )
        assert [p.key for p in request.enabled_query_params] == ["a"]

    def test_configure_auth_none_resets(self) -> None:
        request = make_request(auth_type=AuthType.BEARER_TOKEN, auth_config=AuthConfig.bearer("t"))
        request.configure_auth(None, None)
        assert request.auth_type == AuthType.NONE
        assert request.auth_config is None

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ApiRequest(name="x", url="https://x.io", verb="GET")


class TestEnvironment:
    def test_variables_map_skips_disabled(self) -> None:
        env = Environment(
            name="dev",
            variables=[
                EnvironmentVariable(name="host", value="a"),
                EnvironmentVariable(name="token", value="t", enabled=False),
            ],
        )
        assert dict(env.variables_map()) == {"host": "a"}

    def test_variables_map_last_write_wins(self) -> None:
        env = Environment(
            name="dev",
            variables=[
                EnvironmentVariable(name="host", value="first"),
                EnvironmentVariable(name="host", value="second"),
            ],
        )
        assert env.variables_map()["host"] == "second"

    def test_variables_map_is_read_only(self) -> None:
        env = Environment(name="dev", variables={"host": "a"})
        with pytest.raises(TypeError):
            env.variables_map()["host"] = "b"

    def test_activate_deactivate(self) -> None:
        env = Environment.create("dev")
        env.activate()
        assert env.active
        env.deactivate()
        assert not env.active


class TestCollection:
    def test_blank_name_rejected(self) -> None:
        with pytest.raises(ValidationError, match="cannot be empty"):
            Collection.create("   ")

    def test_long_name_rejected(self) -> None:
        with pytest.raises(ValidationError, match="255"):
            Collection.create("x" * 256)

    def test_rename_validates(self) -> None:
        collection = Collection.create("Users API")
        with pytest.raises(ValidationError):
            collection.rename("")

    def test_add_and_remove_requests(self) -> None:
        collection = Collection.create("Users API")
        collection.add_request(1)
        collection.add_request(2)
        collection.remove_request(1)
        assert collection.request_ids == (2,)
        assert collection.request_count == 1


class TestExecutionResponse:
    def test_success_requires_status(self) -> None:
        with pytest.raises(ValidationError, match="status code"):
            ExecutionResponse(success=True)

    def test_failure_requires_error_type(self) -> None:
        with pytest.raises(ValidationError, match="error type"):
            ExecutionResponse(success=False, error_message="boom")

    def test_failure_cannot_carry_status(self) -> None:
        with pytest.raises(ValidationError):
            ExecutionResponse(success=False, status_code=500, error_type=ErrorKind.UNKNOWN)

    def test_error_statuses_are_still_success(self) -> None:
        response = ExecutionResponse(status_code=500)
        assert response.success

    def test_header_lookup_case_insensitive(self) -> None:
        response = ExecutionResponse(
            status_code=200,
            headers=(Header.of("content-type", "text/plain"), Header.of("x-multi", "a")),
        )
        assert response.header("Content-Type") == "text/plain"
        assert response.header("missing") is None


class TestQueryModels:
    def test_naive_filter_bounds_become_utc(self) -> None:
        history_filter = HistoryFilter(start=datetime(2026, 1, 1), method="get")
        assert history_filter.start.tzinfo == timezone.utc
        assert history_filter.method == HttpMethod.GET

    def test_naive_executed_at_becomes_utc(self) -> None:
        record = HistoryRecord(url="https://x.io", executed_at=datetime(2026, 1, 1))
        assert record.executed_at.tzinfo == timezone.utc

    @pytest.mark.parametrize("page,size", [(-1, 10), (0, 0)])
    def test_page_request_bounds(self, page: int, size: int) -> None:
        with pytest.raises(ValidationError):
            PageRequest(page=page, size=size)

    def test_page_request_offset(self) -> None:
        assert PageRequest(page=3, size=20).offset == 60

    def test_total_pages(self) -> None:
        assert Page[int](items=[], total=41, page=0, size=20).total_pages == 3
        assert Page[int](items=[], total=0, page=0, size=20).total_pages == 0

    def test_runtime_config_defaults(self) -> None:
        config = RuntimeConfig()
        assert config.timeout_seconds == 30.0
        assert config.follow_redirects
        assert config.default_headers == {}

    def test_runtime_config_rejects_non_positive_timeout(self) -> None:
        with pytest.raises(ValidationError):
            RuntimeConfig(timeout_seconds=0)
