"""
Weather lookups and the farming alert rules built on them
"""
from dataclasses import dataclass
from typing import Callable, List, Optional
import json
import logging

import httpx

from .config import settings
from .dispatcher import NotificationPayload
from .exceptions import EngineError
from agrinotify.utils.timezone import format_local_time, utc_now

logger = logging.getLogger(__name__)


class WeatherLookupError(EngineError):
    """Raised when the weather provider cannot produce a report for a city"""


@dataclass(frozen=True)
class WeatherReport:
    city: str
    temperature: float
    condition: str
    humidity: float
    wind_speed: float
    original_condition: str = ""


def normalize_condition(raw: str) -> str:
    if "Thunderstorm" in raw:
        return "Stormy"
    if "Rain" in raw:
        return "Rainy"
    if "Cloud" in raw:
        return "Cloudy"
    return "Sunny"


def pest_alerts(report: WeatherReport) -> List[str]:
    temp, condition = report.temperature, report.condition
    pests = []
    if temp > 28 and condition == "Sunny":
        pests.append("Mango hopper")
    if temp > 25 and condition == "Cloudy":
        pests.append("Mealybug")
    if 22 <= temp <= 30 and condition == "Rainy":
        pests.append("Cecid Fly")
    if condition == "Rainy":
        pests.append("Anthracnose")
    if temp > 30:
        pests.append("Leaf Hopper")
    if condition == "Rainy" and temp > 25:
        pests.append("Fungal diseases")
    if condition == "Sunny" and temp > 32:
        pests.append("Heat stress")
    if report.humidity > 85:
        pests.append("Powdery mildew risk")
    if report.wind_speed > 5:
        pests.append("Wind may spread pests")
    return pests


def farming_advice(report: WeatherReport) -> str:
    advice = []
    if report.condition == "Rainy":
        advice.append("Avoid field work.")
    if report.condition == "Stormy":
        advice.append("Secure farm equipment.")
    if report.temperature > 30:
        advice.append("Water plants early morning.")
    if report.temperature < 20:
        advice.append("Protect sensitive plants.")
    if report.humidity > 85:
        advice.append("Monitor for fungal diseases.")
    if report.wind_speed > 6:
        advice.append("Check for wind damage.")
    return " ".join(advice) if advice else "Normal farming activities."


def needs_pest_alert(report: WeatherReport) -> bool:
    return (
        bool(pest_alerts(report))
        or "Thunderstorm" in report.original_condition
        or report.temperature > 35
        or report.temperature < 15
        or report.wind_speed > 10
    )


def weather_message(report: WeatherReport, pests: List[str]) -> str:
    """Full in-app text: conditions, pest list and advice."""
    lines = [
        f"🌡️ {round(report.temperature)}°C | {report.condition}",
        f"💧 {round(report.humidity)}% | 💨 {report.wind_speed:.1f}m/s",
        f"⏰ {format_local_time(utc_now())}",
    ]
    if pests:
        pest_block = "⚠️ Pest Alert:\n" + "\n".join(f"• {p}" for p in pests)
    else:
        pest_block = "✅ No major pest threats"
    return "\n".join(lines) + f"\n\n{pest_block}\n\n💡 {farming_advice(report)}"


def _report_data(report: WeatherReport, alert_type: str, pests: List[str], test: bool = False) -> dict:
    return {
        "type": alert_type,
        "city": report.city,
        "temperature": str(round(report.temperature)),
        "condition": report.condition,
        "humidity": str(round(report.humidity)),
        "wind_speed": f"{report.wind_speed:.1f}",
        "pests": json.dumps(pests),
        "timestamp": utc_now().isoformat(),
        "message": weather_message(report, pests),
        "test": str(test).lower(),
        "source": "agrinotify",
    }


def weather_update_payload(report: WeatherReport, test: bool = False) -> NotificationPayload:
    title = f"🧪 Weather Test: {report.city}" if test else f"🌤️ Weather Update: {report.city}"
    return NotificationPayload(
        title=title,
        body=f"{round(report.temperature)}°C | {report.condition}",
        data=_report_data(report, "weather", pest_alerts(report), test=test),
        channel_id="weather_alerts",
        category="WEATHER_ALERT",
    )


def pest_alert_payload(report: WeatherReport, test: bool = False) -> NotificationPayload:
    pests = pest_alerts(report)
    summary = ", ".join(pests) if pests else report.original_condition or report.condition
    return NotificationPayload(
        title=f"🐛 Pest Alert: {report.city}",
        body=f"{round(report.temperature)}°C | {summary}",
        data=_report_data(report, "pest_alert", pests, test=test),
        channel_id="weather_alerts",
        category="WEATHER_ALERT",
    )


class WeatherProvider:
    """OpenWeatherMap current-weather client"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        country: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.WEATHER_API_KEY
        self.base_url = base_url or settings.WEATHER_BASE_URL
        self.country = country or settings.WEATHER_COUNTRY_CODE
        self.timeout = timeout or settings.WEATHER_TIMEOUT_SECONDS
        self.client = client

    def fetch(self, city: str) -> WeatherReport:
        if not self.api_key:
            raise WeatherLookupError("Weather API key not configured")

        params = {"q": f"{city},{self.country}", "appid": self.api_key, "units": "metric"}
        try:
            if self.client is not None:
                response = self.client.get(self.base_url, params=params, timeout=self.timeout)
            else:
                response = httpx.get(self.base_url, params=params, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"⚠️ [Weather] Lookup failed for {city}: {e!r}")
            raise WeatherLookupError(f"Weather lookup failed for {city}") from e

        try:
            original = body["weather"][0]["main"]
            report = WeatherReport(
                city=city,
                temperature=float(body["main"]["temp"]),
                condition=normalize_condition(original),
                humidity=float(body["main"]["humidity"]),
                wind_speed=float(body.get("wind", {}).get("speed", 0.0)),
                original_condition=original,
            )
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise WeatherLookupError(f"Unexpected weather response for {city}") from e

        logger.info(f"🌤️ [Weather] {city}: {report.temperature}°C {report.condition}")
        return report


PayloadResolver = Callable[[str], Optional[NotificationPayload]]


def default_resolver(alert_class: str, provider: WeatherProvider) -> PayloadResolver:
    """Build the location -> payload resolver for an alert class.

    Weather sends an update for every location; pest only when the rules
    flag a risk.
    """

    def resolve(city: str) -> Optional[NotificationPayload]:
        report = provider.fetch(city)
        if alert_class == "pest":
            return pest_alert_payload(report) if needs_pest_alert(report) else None
        return weather_update_payload(report)

    return resolve
