import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Union

import requests

from cadre.config import weather_api_key_configured
from cadre.metrics import metric_weather_fetches_total

logger = logging.getLogger(__name__)

OPENWEATHERMAP_URL = "https://api.openweathermap.org/data/2.5/weather"
DEFAULT_TTL_S = 15 * 60
DEFAULT_TIMEOUT_S = 10.0


class RemoteFetchError(Exception):
    pass


@dataclass(frozen=True)
class WeatherReading:
    temperature: float
    description: str
    icon_id: str
    location: str
    fetched_at: float

    def to_dict(self) -> Dict:
        return {
            "temperature": self.temperature,
            "description": self.description,
            "iconId": self.icon_id,
            "location": self.location,
            "fetchedAt": datetime.fromtimestamp(self.fetched_at, tz=timezone.utc).isoformat(),
        }


@dataclass(frozen=True)
class WeatherUnavailable:
    reason: str

    def to_dict(self) -> Dict:
        return {"error": self.reason}


WeatherResult = Union[WeatherReading, WeatherUnavailable]


def parse_reading(payload: Dict, fetched_at: float) -> WeatherReading:
    try:
        return WeatherReading(
            temperature=round(payload["main"]["temp"]),
            description=payload["weather"][0]["description"],
            icon_id=payload["weather"][0]["icon"],
            location=payload.get("name", ""),
            fetched_at=fetched_at,
        )
    except (KeyError, IndexError, TypeError) as e:
        raise RemoteFetchError(f"Unexpected weather payload: {e}") from e


class WeatherService:
    """Fetches the current weather and keeps the last reading for a fixed TTL.

    A failed refresh raises RemoteFetchError and leaves the cached reading
    untouched; it is not served past its TTL.
    """

    def __init__(
        self,
        weather_config: Dict,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = weather_config
        self.session = session or requests.Session()
        self.clock = clock
        self.ttl_s = weather_config.get("cacheTtlSeconds", DEFAULT_TTL_S)
        self.timeout_s = weather_config.get("timeoutSeconds", DEFAULT_TIMEOUT_S)
        self._reading: Optional[WeatherReading] = None
        self._lock = threading.Lock()

    def _fresh(self, reading: Optional[WeatherReading]) -> bool:
        return reading is not None and self.clock() - reading.fetched_at < self.ttl_s

    def get_weather(self) -> WeatherResult:
        if not self.config.get("enabled") or not weather_api_key_configured(self.config):
            return WeatherUnavailable("Weather is disabled or API key is missing.")

        reading = self._reading
        if self._fresh(reading):
            return reading

        with self._lock:
            # Another request may have refreshed it while we waited.
            reading = self._reading
            if self._fresh(reading):
                return reading
            reading = self._fetch()
            self._reading = reading
            return reading

    def _fetch(self) -> WeatherReading:
        params = {
            "lat": self.config.get("lat"),
            "lon": self.config.get("lon"),
            "units": self.config.get("units", "imperial"),
            "appid": self.config.get("apiKey"),
        }
        try:
            r = self.session.get(OPENWEATHERMAP_URL, params=params, timeout=self.timeout_s)
        except requests.exceptions.RequestException as e:
            metric_weather_fetches_total.labels(result="error").inc()
            logger.error(f"Error fetching weather: {e}")
            raise RemoteFetchError(f"Weather API unreachable: {e}") from e

        if r.status_code != 200:
            metric_weather_fetches_total.labels(result="error").inc()
            logger.error(
                f"Error fetching weather: HTTP {r.status_code}: {r.text[:500]}"
            )
            raise RemoteFetchError(f"Weather API returned HTTP {r.status_code}")

        try:
            reading = parse_reading(r.json(), self.clock())
        except ValueError as e:
            metric_weather_fetches_total.labels(result="error").inc()
            raise RemoteFetchError(f"Weather API returned invalid JSON: {e}") from e
        except RemoteFetchError:
            metric_weather_fetches_total.labels(result="error").inc()
            raise
        metric_weather_fetches_total.labels(result="ok").inc()
        logger.debug(f"Fetched weather for {reading.location}: {reading}")
        return reading
