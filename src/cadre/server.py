import logging
import os
import random
from typing import Dict

from flask import Flask, Response, jsonify, send_from_directory
from prometheus_client import REGISTRY, generate_latest

from cadre.catalog import CatalogCache
from cadre.config import public_config
from cadre.weather import RemoteFetchError, WeatherService

logger = logging.getLogger(__name__)

STATIC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "static")


def create_app(config: Dict, catalog: CatalogCache, weather: WeatherService) -> Flask:
    """Builds the kiosk web app.

    Handlers only read from `catalog` and `weather`; nothing here can start
    a rescan.
    """
    app = Flask(__name__, static_folder=STATIC_DIR, static_url_path="/static")
    app.config["CADRE_CONFIG"] = config
    app.config["CADRE_CATALOG"] = catalog
    app.config["CADRE_WEATHER"] = weather
    photos_dir = config["photosDir"]

    @app.route("/")
    def serve_ui_page():
        return send_from_directory(STATIC_DIR, "index.html")

    @app.route("/metrics")
    def metrics():
        return Response(generate_latest(REGISTRY), mimetype="text/plain")

    @app.route("/api/config", methods=["GET"])
    def get_config():
        return jsonify(public_config(config)), 200

    @app.route("/api/images", methods=["GET"])
    def get_images():
        records = catalog.get().to_list()
        # A new order on every call so the slideshow varies.
        return jsonify(random.sample(records, len(records))), 200

    @app.route("/api/weather", methods=["GET"])
    def get_weather():
        try:
            result = weather.get_weather()
        except RemoteFetchError as e:
            logger.warning(f"Weather request failed: {e}")
            return jsonify({"error": "Failed to fetch weather data."}), 500
        except Exception as e:
            logger.error(f"Unexpected error fetching weather: {e}", exc_info=True)
            return jsonify({"error": "Failed to fetch weather data."}), 500
        # WeatherUnavailable is a configuration state, not a failure.
        return jsonify(result.to_dict()), 200

    @app.route("/photos/<path:filename>", methods=["GET"])
    def get_photo(filename):
        return send_from_directory(photos_dir, filename)

    return app
