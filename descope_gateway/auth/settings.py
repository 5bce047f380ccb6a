"""
Settings for the Descope MCP authorization gateway.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import urlparse

from .errors import ConfigurationError

REQUIRED_ENV_VARS = ["DESCOPE_PROJECT_ID", "DESCOPE_MANAGEMENT_KEY", "SERVER_URL"]

DEFAULT_DESCOPE_BASE_URL = "https://api.descope.com"


def _is_true(value: Optional[str], default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("true", "1", "yes")


def _split_scopes(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [s for s in value.replace(",", " ").split() if s]


def _normalize_url(name: str, value: str) -> str:
    """Strip trailing slashes and make sure the URL is absolute http(s)."""
    value = value.strip().rstrip("/")
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigurationError(
            error="invalid_configuration",
            error_description=f"{name} must be an absolute http(s) URL, got {value!r}",
        )
    return value


@dataclass
class DescopeSettings:
    """Settings for the upstream Descope project."""
    project_id: str
    management_key: str
    base_url: str = DEFAULT_DESCOPE_BASE_URL
    audience: Optional[str] = None
    issuer: Optional[str] = None

    @property
    def jwks_url(self) -> str:
        return f"{self.base_url}/{self.project_id}/.well-known/jwks.json"

    @property
    def authorize_url(self) -> str:
        return f"{self.base_url}/oauth2/v1/apps/authorize"

    @property
    def token_url(self) -> str:
        return f"{self.base_url}/oauth2/v1/apps/token"

    @property
    def revoke_url(self) -> str:
        return f"{self.base_url}/oauth2/v1/apps/revoke"

    @property
    def create_app_url(self) -> str:
        return f"{self.base_url}/v1/mgmt/thirdparty/app/create"


@dataclass
class GatewaySettings:
    """Main settings for the gateway, loaded once at startup and read-only afterwards."""
    server_url: str
    descope: DescopeSettings
    host: str = "0.0.0.0"
    port: int = 3000
    dcr_disabled: bool = False
    required_scopes: List[str] = field(default_factory=list)
    supported_scopes: List[str] = field(default_factory=lambda: ["openid"])
    upstream_timeout: float = 10.0
    mcp_path: str = "/mcp"
    stateless: bool = True
    session_ttl: float = 1800.0
    log_level: str = "INFO"
    log_request_bodies: bool = False
    nws_api_base: str = "https://api.weather.gov"

    @property
    def registration_url(self) -> str:
        return f"{self.server_url}/register"

    @property
    def revocation_url(self) -> str:
        return f"{self.server_url}/revoke"

    @property
    def authorization_url(self) -> str:
        return f"{self.server_url}/authorize"

    @classmethod
    def load_from_env(cls, env_dict: Dict[str, str]) -> "GatewaySettings":
        """
        Load settings from environment variables.

        Args:
            env_dict: Mapping of environment variable names to values

        Returns:
            The populated settings

        Raises:
            ConfigurationError: If required variables are missing or malformed
        """
        missing = [name for name in REQUIRED_ENV_VARS if not env_dict.get(name)]
        if missing:
            raise ConfigurationError(
                error="missing_configuration",
                error_description=f"Missing required environment variables: {', '.join(missing)}",
                missing=missing,
            )

        base_url = env_dict.get("DESCOPE_BASE_URL") or DEFAULT_DESCOPE_BASE_URL
        if not base_url.startswith(("http://", "https://")):
            base_url = f"https://{base_url}"

        descope = DescopeSettings(
            project_id=env_dict["DESCOPE_PROJECT_ID"].strip(),
            management_key=env_dict["DESCOPE_MANAGEMENT_KEY"].strip(),
            base_url=_normalize_url("DESCOPE_BASE_URL", base_url),
            audience=env_dict.get("TOKEN_AUDIENCE") or None,
            issuer=env_dict.get("TOKEN_ISSUER") or None,
        )

        try:
            port = int(env_dict.get("PORT", "3000"))
            timeout = float(env_dict.get("UPSTREAM_TIMEOUT_SECONDS", "10"))
            session_ttl = float(env_dict.get("MCP_SESSION_TTL_SECONDS", "1800"))
        except ValueError as e:
            raise ConfigurationError(
                error="invalid_configuration",
                error_description=f"PORT, UPSTREAM_TIMEOUT_SECONDS and MCP_SESSION_TTL_SECONDS must be numeric: {e}",
            )
        if timeout <= 0 or session_ttl <= 0:
            raise ConfigurationError(
                error="invalid_configuration",
                error_description="UPSTREAM_TIMEOUT_SECONDS and MCP_SESSION_TTL_SECONDS must be positive",
            )

        supported_scopes = _split_scopes(env_dict.get("SUPPORTED_SCOPES")) or ["openid"]
        required_scopes = _split_scopes(env_dict.get("REQUIRED_SCOPES"))
        # Anything we demand on protected routes has to be discoverable too
        for scope in required_scopes:
            if scope not in supported_scopes:
                supported_scopes.append(scope)

        return cls(
            server_url=_normalize_url("SERVER_URL", env_dict["SERVER_URL"]),
            descope=descope,
            host=env_dict.get("HOST", "0.0.0.0"),
            port=port,
            dcr_disabled=_is_true(env_dict.get("DCR_DISABLED")),
            required_scopes=required_scopes,
            supported_scopes=supported_scopes,
            upstream_timeout=timeout,
            stateless=_is_true(env_dict.get("MCP_STATELESS"), default=True),
            session_ttl=session_ttl,
            log_level=env_dict.get("LOG_LEVEL", "INFO").upper(),
            log_request_bodies=_is_true(env_dict.get("LOG_REQUEST_BODIES")),
            nws_api_base=env_dict.get("NWS_API_BASE", "https://api.weather.gov").rstrip("/"),
        )
