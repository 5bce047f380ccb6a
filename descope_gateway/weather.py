"""
Weather tools served over MCP.

Registers the MCP lifecycle methods and two tools backed by the National
Weather Service API: ``get-alerts`` for a US state and ``get-forecast`` for
a latitude/longitude pair.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx
from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import (
    INVALID_PARAMS,
    LATEST_PROTOCOL_VERSION,
    Implementation,
    InitializeResult,
    ServerCapabilities,
    TextContent,
    Tool,
    ToolsCapability,
)
from pydantic import BaseModel, Field, ValidationError

from . import __version__
from .auth.errors import TransportError
from .transport.adapter import MethodRegistry, RequestContext

logger = logging.getLogger(__name__)

SERVER_NAME = "weather"
USER_AGENT = "weather-app/1.0"
NWS_HEADERS = {"User-Agent": USER_AGENT, "Accept": "application/geo+json"}


class AlertsArguments(BaseModel):
    state: str = Field(min_length=2, max_length=2, description="Two-letter state code (e.g. CA, NY)")


class ForecastArguments(BaseModel):
    latitude: float = Field(ge=-90, le=90, description="Latitude of the location")
    longitude: float = Field(ge=-180, le=180, description="Longitude of the location")


TOOLS = {
    "get-alerts": ("Get weather alerts for a state", AlertsArguments),
    "get-forecast": ("Get weather forecast for a location", ForecastArguments),
}


def _dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def _text_result(text: str) -> Dict[str, Any]:
    return {"content": [_dump(TextContent(type="text", text=text))]}


def _format_number(value: float) -> str:
    # 40.0 reads as "40", 37.7749 stays as is
    return str(int(value)) if float(value).is_integer() else str(value)


def format_alert(feature: Dict[str, Any]) -> str:
    """Format a single NWS alert feature."""
    props = feature.get("properties") or {}
    return "\n".join([
        f"Event: {props.get('event') or 'Unknown'}",
        f"Area: {props.get('areaDesc') or 'Unknown'}",
        f"Severity: {props.get('severity') or 'Unknown'}",
        f"Status: {props.get('status') or 'Unknown'}",
        f"Headline: {props.get('headline') or 'No headline'}",
        "---",
    ])


def format_period(period: Dict[str, Any]) -> str:
    """Format a single NWS forecast period."""
    return "\n".join([
        f"{period.get('name') or 'Unknown'}:",
        f"Temperature: {period.get('temperature') or 'Unknown'}°{period.get('temperatureUnit') or 'F'}",
        f"Wind: {period.get('windSpeed') or 'Unknown'} {period.get('windDirection') or ''}",
        f"{period.get('shortForecast') or 'No forecast available'}",
        "---",
    ])


class WeatherTools:
    """
    NWS backed tool implementations.

    Args:
        http_client: Shared HTTP client owned by the composition root
        api_base: Base URL of the NWS API
        timeout: Bound on every NWS call, in seconds
    """

    def __init__(self, http_client: httpx.AsyncClient, api_base: str = "https://api.weather.gov",
                 timeout: float = 10.0):
        self.http_client = http_client
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    async def _nws_request(self, url: str) -> Optional[Dict[str, Any]]:
        """GET a NWS resource; None when the call fails for any reason."""
        try:
            response = await self.http_client.get(url, headers=NWS_HEADERS, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Error making NWS request to {url}: {e}")
            return None
        except ValueError as e:
            logger.error(f"NWS response from {url} was not valid JSON: {e}")
            return None
        if not isinstance(data, dict):
            logger.error(f"NWS response from {url} was not a JSON object")
            return None
        return data

    async def get_alerts(self, args: AlertsArguments) -> str:
        state_code = args.state.upper()
        alerts_data = await self._nws_request(f"{self.api_base}/alerts?area={state_code}")
        if alerts_data is None:
            return "Failed to retrieve alerts data"

        features = alerts_data.get("features") or []
        if not features:
            return f"No active alerts for {state_code}"

        formatted = "\n".join(format_alert(feature) for feature in features)
        return f"Active alerts for {state_code}:\n\n{formatted}"

    async def get_forecast(self, args: ForecastArguments) -> str:
        latitude = _format_number(args.latitude)
        longitude = _format_number(args.longitude)
        points_url = f"{self.api_base}/points/{args.latitude:.4f},{args.longitude:.4f}"
        points_data = await self._nws_request(points_url)
        if points_data is None:
            return (
                f"Failed to retrieve grid point data for coordinates: {latitude}, {longitude}. "
                "This location may not be supported by the NWS API (only US locations are supported)."
            )

        forecast_url = (points_data.get("properties") or {}).get("forecast")
        if not forecast_url:
            return "Failed to get forecast URL from grid point data"

        forecast_data = await self._nws_request(forecast_url)
        if forecast_data is None:
            return "Failed to retrieve forecast data"

        periods = (forecast_data.get("properties") or {}).get("periods") or []
        if not periods:
            return "No forecast periods available"

        formatted = "\n".join(format_period(period) for period in periods)
        return f"Forecast for {latitude}, {longitude}:\n\n{formatted}"

    def list_tools(self) -> List[Dict[str, Any]]:
        return [
            _dump(Tool(name=name, description=description, inputSchema=model.model_json_schema()))
            for name, (description, model) in TOOLS.items()
        ]

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> str:
        """
        Run a tool by name.

        Raises:
            TransportError: ``-32602`` for an unknown tool or invalid arguments
        """
        if name not in TOOLS:
            raise TransportError(INVALID_PARAMS, f"Unknown tool: {name}")
        _, model = TOOLS[name]
        try:
            args = model.model_validate(arguments)
        except ValidationError as e:
            raise TransportError(INVALID_PARAMS, f"Invalid arguments for tool {name}",
                                 data=e.errors(include_url=False, include_context=False))

        logger.info(f"Calling tool {name}")
        if name == "get-alerts":
            return await self.get_alerts(args)
        return await self.get_forecast(args)


def negotiate_protocol_version(requested: Any) -> str:
    if isinstance(requested, str) and requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return LATEST_PROTOCOL_VERSION


def register_weather_methods(registry: MethodRegistry, tools: WeatherTools) -> MethodRegistry:
    """Register the MCP lifecycle methods and the weather tools on ``registry``."""

    @registry.register("initialize")
    async def initialize(params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        client_info = params.get("clientInfo") or {}
        logger.info(f"MCP client initializing: {client_info.get('name', 'unknown')}")
        result = InitializeResult(
            protocolVersion=negotiate_protocol_version(params.get("protocolVersion")),
            capabilities=ServerCapabilities(tools=ToolsCapability(listChanged=False)),
            serverInfo=Implementation(name=SERVER_NAME, version=__version__),
        )
        return _dump(result)

    @registry.register("notifications/initialized")
    async def initialized(params: Dict[str, Any], context: RequestContext) -> None:
        logger.debug("MCP client finished initialization")

    @registry.register("ping")
    async def ping(params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        return {}

    @registry.register("tools/list")
    async def list_tools(params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        return {"tools": tools.list_tools()}

    @registry.register("tools/call")
    async def call_tool(params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not isinstance(name, str) or not isinstance(arguments, dict):
            raise TransportError(INVALID_PARAMS, "Invalid params")
        subject = context.principal.subject if context.principal else "anonymous"
        logger.debug(f"Principal {subject} called tool {name}")
        return _text_result(await tools.call_tool(name, arguments))

    return registry
