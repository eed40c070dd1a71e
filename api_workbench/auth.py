"""Auth Strategy Dispatcher - Turns an auth configuration into headers/params.

One strategy per AuthType, registered in a fixed table that is checked for
completeness at import time. Strategies never log credential values.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from api_workbench.errors import AuthConfigurationError
from api_workbench.models import AuthConfig, AuthType, Header, QueryParam


@dataclass(frozen=True)
class AuthResult:
    """Header and query param lists after auth has been applied."""

    headers: list[Header] = field(default_factory=list)
    query_params: list[QueryParam] = field(default_factory=list)


class AuthStrategy:
    """Base class: adds nothing."""

    auth_type: AuthType = AuthType.NONE

    def apply(
        self,
        config: AuthConfig | None,
        headers: list[Header],
        query_params: list[QueryParam],
    ) -> AuthResult:
        return AuthResult(headers=list(headers), query_params=list(query_params))

    def _require(self, config: AuthConfig | None, *field_names: str) -> AuthConfig:
        """Return config, raising AuthConfigurationError if any field is absent."""
        if config is None:
            raise AuthConfigurationError(
                f"{self.auth_type.value} auth selected but no auth configuration provided"
            )
        missing = [name for name in field_names if not getattr(config, name)]
        if missing:
            raise AuthConfigurationError(
                f"{self.auth_type.value} auth requires: {', '.join(missing)}"
            )
        return config


class NoAuth(AuthStrategy):
    auth_type = AuthType.NONE


class BearerTokenAuth(AuthStrategy):
    auth_type = AuthType.BEARER_TOKEN

    def apply(self, config, headers, query_params):
        config = self._require(config, "bearer_token")
        return AuthResult(
            headers=[*headers, Header.of("Authorization", f"Bearer {config.bearer_token}")],
            query_params=list(query_params),
        )


class BasicAuth(AuthStrategy):
    auth_type = AuthType.BASIC_AUTH

    def apply(self, config, headers, query_params):
        # An empty password is still a password; only absence is an error.
        if config is None or config.basic_username is None or config.basic_password is None:
            raise AuthConfigurationError("BASIC_AUTH requires both username and password")
        return AuthResult(
            headers=[*headers, Header.of("Authorization", config.basic_auth_header)],
            query_params=list(query_params),
        )


class ApiKeyAuth(AuthStrategy):
    auth_type = AuthType.API_KEY

    def apply(self, config, headers, query_params):
        config = self._require(config, "api_key", "api_key_header_name")
        if config.api_key_location == "header":
            return AuthResult(
                headers=[*headers, Header.of(config.api_key_header_name, config.api_key)],
                query_params=list(query_params),
            )
        if config.api_key_location == "query":
            return AuthResult(
                headers=list(headers),
                query_params=[
                    *query_params,
                    QueryParam(key=config.api_key_header_name, value=config.api_key),
                ],
            )
        raise AuthConfigurationError(
            f"Unknown API key location '{config.api_key_location}'. Expected 'header' or 'query'"
        )


class OAuth2Auth(AuthStrategy):
    """Sends the stored access token. No refresh: expiry shows up as a 401."""

    auth_type = AuthType.OAUTH2

    def apply(self, config, headers, query_params):
        config = self._require(config, "oauth2_access_token")
        return AuthResult(
            headers=[*headers, Header.of("Authorization", f"Bearer {config.oauth2_access_token}")],
            query_params=list(query_params),
        )


_STRATEGIES: dict[AuthType, AuthStrategy] = {
    strategy.auth_type: strategy
    for strategy in (NoAuth(), BearerTokenAuth(), BasicAuth(), ApiKeyAuth(), OAuth2Auth())
}

_missing = set(AuthType) - set(_STRATEGIES)
if _missing:
    raise RuntimeError(f"No auth strategy registered for: {sorted(m.value for m in _missing)}")


def get_strategy(auth_type: AuthType) -> AuthStrategy:
    return _STRATEGIES[auth_type]


def apply_auth(
    auth_type: AuthType,
    config: AuthConfig | None,
    headers: list[Header],
    query_params: list[QueryParam],
) -> AuthResult:
    """Apply the strategy for auth_type to already-resolved headers/params.

    Raises:
        AuthConfigurationError: If the auth kind needs fields the config lacks.
    """
    return get_strategy(auth_type).apply(config, headers, query_params)
