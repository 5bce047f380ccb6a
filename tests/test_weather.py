"""Tests for the weather tools, with the NWS API mocked by respx."""
import httpx
import pytest
import respx
from mcp.types import LATEST_PROTOCOL_VERSION

from descope_gateway.auth.errors import TransportError
from descope_gateway.transport.adapter import MethodRegistry, StreamableHTTPTransport
from descope_gateway.weather import WeatherTools, format_alert, format_period, register_weather_methods
from tests.test_transport import make_request, payload

NWS = "https://api.weather.test"

ALERT = {
    "properties": {
        "event": "Flood Warning",
        "areaDesc": "Sacramento County",
        "severity": "Severe",
        "status": "Actual",
        "headline": "Flood Warning issued",
    }
}

PERIOD = {
    "name": "Tonight",
    "temperature": 55,
    "temperatureUnit": "F",
    "windSpeed": "5 mph",
    "windDirection": "NW",
    "shortForecast": "Mostly Clear",
}


@pytest.fixture
async def tools():
    async with httpx.AsyncClient() as client:
        yield WeatherTools(client, api_base=NWS, timeout=1.0)


@pytest.fixture
async def transport(tools):
    transport = StreamableHTTPTransport(register_weather_methods(MethodRegistry(), tools))
    await transport.start()
    yield transport
    await transport.close()


async def call(transport, method, params=None, request_id=1):
    message = {"jsonrpc": "2.0", "method": method, "id": request_id}
    if params is not None:
        message["params"] = params
    return payload(await transport.handle_post(make_request(message)))


class TestFormatting:
    def test_format_alert(self):
        assert format_alert(ALERT) == (
            "Event: Flood Warning\n"
            "Area: Sacramento County\n"
            "Severity: Severe\n"
            "Status: Actual\n"
            "Headline: Flood Warning issued\n"
            "---"
        )

    def test_format_alert_defaults(self):
        assert format_alert({"properties": {}}).splitlines() == [
            "Event: Unknown",
            "Area: Unknown",
            "Severity: Unknown",
            "Status: Unknown",
            "Headline: No headline",
            "---",
        ]

    def test_format_period(self):
        assert format_period(PERIOD) == "Tonight:\nTemperature: 55°F\nWind: 5 mph NW\nMostly Clear\n---"


class TestAlerts:
    @respx.mock
    async def test_active_alerts(self, tools):
        route = respx.get(f"{NWS}/alerts", params={"area": "CA"}).mock(
            return_value=httpx.Response(200, json={"features": [ALERT, ALERT]})
        )

        text = await tools.call_tool("get-alerts", {"state": "ca"})

        assert text.startswith("Active alerts for CA:\n\nEvent: Flood Warning")
        assert text.count("---") == 2
        request = route.calls.last.request
        assert request.headers["User-Agent"] == "weather-app/1.0"
        assert request.headers["Accept"] == "application/geo+json"

    @respx.mock
    async def test_no_alerts(self, tools):
        respx.get(f"{NWS}/alerts").mock(return_value=httpx.Response(200, json={"features": []}))
        assert await tools.call_tool("get-alerts", {"state": "NY"}) == "No active alerts for NY"

    @respx.mock
    async def test_upstream_failure(self, tools):
        respx.get(f"{NWS}/alerts").mock(return_value=httpx.Response(500))
        assert await tools.call_tool("get-alerts", {"state": "NY"}) == "Failed to retrieve alerts data"

    async def test_state_must_be_two_letters(self, tools):
        with pytest.raises(TransportError) as exc_info:
            await tools.call_tool("get-alerts", {"state": "CAL"})
        assert exc_info.value.code == -32602


class TestForecast:
    @respx.mock
    async def test_forecast(self, tools):
        forecast_url = f"{NWS}/gridpoints/MTR/85,105/forecast"
        respx.get(f"{NWS}/points/37.7749,-122.4194").mock(
            return_value=httpx.Response(200, json={"properties": {"forecast": forecast_url}})
        )
        respx.get(forecast_url).mock(
            return_value=httpx.Response(200, json={"properties": {"periods": [PERIOD]}})
        )

        text = await tools.call_tool("get-forecast", {"latitude": 37.7749, "longitude": -122.4194})

        assert text == (
            "Forecast for 37.7749, -122.4194:\n\n"
            "Tonight:\nTemperature: 55°F\nWind: 5 mph NW\nMostly Clear\n---"
        )

    @respx.mock
    async def test_unsupported_location(self, tools):
        respx.get(f"{NWS}/points/51.5000,0.0000").mock(return_value=httpx.Response(404))

        text = await tools.call_tool("get-forecast", {"latitude": 51.5, "longitude": 0})

        assert text.startswith("Failed to retrieve grid point data for coordinates: 51.5, 0.")

    @respx.mock
    async def test_missing_forecast_url(self, tools):
        respx.get(f"{NWS}/points/40.0000,-100.0000").mock(return_value=httpx.Response(200, json={"properties": {}}))

        text = await tools.call_tool("get-forecast", {"latitude": 40, "longitude": -100})
        assert text == "Failed to get forecast URL from grid point data"

    @respx.mock
    async def test_forecast_unreachable(self, tools):
        forecast_url = f"{NWS}/gridpoints/TOP/31,80/forecast"
        respx.get(f"{NWS}/points/40.0000,-100.0000").mock(
            return_value=httpx.Response(200, json={"properties": {"forecast": forecast_url}})
        )
        respx.get(forecast_url).mock(side_effect=httpx.ConnectError("refused"))

        text = await tools.call_tool("get-forecast", {"latitude": 40, "longitude": -100})
        assert text == "Failed to retrieve forecast data"

    @respx.mock
    async def test_no_periods(self, tools):
        forecast_url = f"{NWS}/gridpoints/TOP/31,80/forecast"
        respx.get(f"{NWS}/points/40.0000,-100.0000").mock(
            return_value=httpx.Response(200, json={"properties": {"forecast": forecast_url}})
        )
        respx.get(forecast_url).mock(return_value=httpx.Response(200, json={"properties": {"periods": []}}))

        text = await tools.call_tool("get-forecast", {"latitude": 40, "longitude": -100})
        assert text == "No forecast periods available"

    @pytest.mark.parametrize("arguments", [{"latitude": 91, "longitude": 0}, {"latitude": 0}, {}])
    async def test_invalid_coordinates(self, tools, arguments):
        with pytest.raises(TransportError) as exc_info:
            await tools.call_tool("get-forecast", arguments)
        assert exc_info.value.code == -32602


class TestMcpMethods:
    async def test_initialize(self, transport):
        response = await call(transport, "initialize", {
            "protocolVersion": "2024-11-05",
            "capabilities": {},
            "clientInfo": {"name": "test-client", "version": "0.1"},
        })

        result = response["result"]
        assert result["protocolVersion"] == "2024-11-05"
        assert result["serverInfo"]["name"] == "weather"
        assert result["capabilities"]["tools"] == {"listChanged": False}

    async def test_initialize_unknown_version(self, transport):
        response = await call(transport, "initialize", {"protocolVersion": "1999-01-01"})
        assert response["result"]["protocolVersion"] == LATEST_PROTOCOL_VERSION

    async def test_ping(self, transport):
        assert await call(transport, "ping") == {"jsonrpc": "2.0", "result": {}, "id": 1}

    async def test_tools_list(self, transport):
        tools = (await call(transport, "tools/list"))["result"]["tools"]

        assert [tool["name"] for tool in tools] == ["get-alerts", "get-forecast"]
        assert tools[0]["inputSchema"]["required"] == ["state"]
        assert set(tools[1]["inputSchema"]["properties"]) == {"latitude", "longitude"}

    @respx.mock
    async def test_tools_call(self, transport):
        respx.get(f"{NWS}/alerts").mock(return_value=httpx.Response(200, json={"features": []}))

        response = await call(transport, "tools/call", {"name": "get-alerts", "arguments": {"state": "TX"}})

        assert response["result"] == {"content": [{"type": "text", "text": "No active alerts for TX"}]}

    async def test_unknown_tool(self, transport):
        response = await call(transport, "tools/call", {"name": "get-tides", "arguments": {}})
        assert response["error"]["code"] == -32602

    async def test_invalid_arguments_are_described(self, transport):
        response = await call(transport, "tools/call", {"name": "get-alerts", "arguments": {"state": 12}})

        assert response["error"]["code"] == -32602
        assert response["error"]["data"][0]["loc"] == ["state"]
