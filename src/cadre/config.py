import copy
import difflib
import logging
import os
from typing import Dict, List

import yaml

logger = logging.getLogger(__name__)

WEATHER_API_KEY_PLACEHOLDER = "YOUR_OPENWEATHERMAP_API_KEY"
GOOGLE_CLIENT_ID_PLACEHOLDER = "YOUR_GOOGLE_CLIENT_ID"
GOOGLE_CLIENT_SECRET_PLACEHOLDER = "YOUR_GOOGLE_CLIENT_SECRET"

CROPPING_MODES = {"attention", "entropy", "none"}
WEATHER_UNITS = {"imperial", "metric", "standard"}
LOGGING_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
SECRET_KEYS = (("weather", "apiKey"), ("googlePhotos", "clientSecret"))
REDACTED = "********"


class ConfigError(Exception):
    pass


def default_config() -> Dict:
    """Returns a fresh copy of the documented defaults."""
    return {
        "port": int(os.environ.get("PORT") or 3000),
        "host": "0.0.0.0",
        "photosDir": "./photos",
        "transitionTime": 1500,
        "imageDisplayTime": 10000,
        "croppingMode": "attention",
        "weather": {
            "enabled": True,
            "apiKey": WEATHER_API_KEY_PLACEHOLDER,
            "lat": 38.7521,
            "lon": -121.2880,
            "units": "imperial",
            "timeoutSeconds": 10.0,
            "cacheTtlSeconds": 900,
        },
        "clock": {
            "enabled": True,
            "format": "h:mm A",
            "showDate": True,
            "dateFormat": "cccc, MMMM d",
        },
        "albums": {
            "enabled": True,
            "showAlbumName": True,
            "showPhotoDate": True,
            "dateFormat": "MMMM d, yyyy",
        },
        "googlePhotos": {
            "enabled": False,
            "clientId": GOOGLE_CLIENT_ID_PLACEHOLDER,
            "clientSecret": GOOGLE_CLIENT_SECRET_PLACEHOLDER,
            "albumIds": [],
            "syncInterval": 3600000,
            "tokenFile": ".google-photos-token.json",
            "downloadSize": "w1920-h1080",
        },
        "watcher": {
            "enabled": True,
            "debounceSeconds": 0.5,
            "queueSize": 256,
        },
        "scanner": {
            "incremental": True,
        },
        "logging": {
            "level": "INFO",
            "logDir": None,
            "logMaxBytes": 10_000_000,
            "logBackupCount": 5,
            "levels": {},
        },
    }


def _log_config_diff(section_name: str, before: Dict, after: Dict):
    """Logs the difference between the file content and the effective configuration."""
    before_str = yaml.dump(before, sort_keys=True, default_flow_style=False, indent=2)
    after_str = yaml.dump(after, sort_keys=True, default_flow_style=False, indent=2)

    if before_str != after_str:
        diff = difflib.unified_diff(
            before_str.splitlines(keepends=True),
            after_str.splitlines(keepends=True),
            fromfile=f"{section_name}_file",
            tofile=f"{section_name}_effective",
        )
        logger.debug(
            f"Configuration for '{section_name}' was completed from defaults.\n"
            + "".join(diff)
        )


def _bool(value, path, errors, default=None):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    errors.append(f"{path}: expected bool, got {type(value).__name__}")
    return default


def _int(value, path, errors, default=None, min_value=None, max_value=None):
    if value is None:
        return default
    if isinstance(value, int) and not isinstance(value, bool):
        if (min_value is not None and value < min_value) or (
            max_value is not None and value > max_value
        ):
            errors.append(
                f"{path}: expected int in range [{min_value},{max_value}], got {value}"
            )
            return default
        return value
    errors.append(f"{path}: expected int, got {type(value).__name__}")
    return default


def _float(value, path, errors, default=None, min_value=None, max_value=None):
    if value is None:
        return default
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        v = float(value)
        if (min_value is not None and v < min_value) or (
            max_value is not None and v > max_value
        ):
            errors.append(
                f"{path}: expected number in range [{min_value},{max_value}], got {value}"
            )
            return default
        return v
    errors.append(f"{path}: expected number, got {type(value).__name__}")
    return default


def _str(value, path, errors, default=None, choices=None):
    if value is None:
        return default
    if isinstance(value, str):
        if choices and value not in choices:
            errors.append(
                f"{path}: expected one of {sorted(list(choices))}, got '{value}'"
            )
            return default
        return value
    errors.append(f"{path}: expected str, got {type(value).__name__}")
    return default


def _dict(value, path, errors, default=None):
    if value is None:
        return default or {}
    if isinstance(value, dict):
        return value
    errors.append(f"{path}: expected mapping, got {type(value).__name__}")
    return default or {}


def _str_list(value, path, errors, default=None):
    if value is None:
        return list(default or [])
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    errors.append(f"{path}: expected list of strings")
    return list(default or [])


def _warn_unknown_keys(section_name: str, got: Dict, allowed_keys):
    for k in got.keys():
        if k not in allowed_keys:
            logger.warning(f"{section_name}: unknown key '{k}' will be ignored")


def _validate_top_level(cfg: Dict, defaults: Dict, errors: List[str]) -> Dict:
    _warn_unknown_keys("config", cfg, defaults.keys())
    out = {}
    out["port"] = _int(
        cfg.get("port"), "port", errors, default=defaults["port"], min_value=1, max_value=65535
    )
    out["host"] = _str(cfg.get("host"), "host", errors, default=defaults["host"])
    out["photosDir"] = _str(
        cfg.get("photosDir"), "photosDir", errors, default=defaults["photosDir"]
    )
    out["transitionTime"] = _int(
        cfg.get("transitionTime"),
        "transitionTime",
        errors,
        default=defaults["transitionTime"],
        min_value=0,
    )
    out["imageDisplayTime"] = _int(
        cfg.get("imageDisplayTime"),
        "imageDisplayTime",
        errors,
        default=defaults["imageDisplayTime"],
        min_value=1,
    )
    out["croppingMode"] = _str(
        cfg.get("croppingMode"),
        "croppingMode",
        errors,
        default=defaults["croppingMode"],
        choices=CROPPING_MODES,
    )
    return out


def _validate_weather(cfg: Dict, defaults: Dict, errors: List[str]) -> Dict:
    _warn_unknown_keys("weather", cfg, defaults.keys())
    out = {}
    out["enabled"] = _bool(
        cfg.get("enabled"), "weather.enabled", errors, default=defaults["enabled"]
    )
    out["apiKey"] = _str(
        cfg.get("apiKey"), "weather.apiKey", errors, default=defaults["apiKey"]
    )
    out["lat"] = _float(
        cfg.get("lat"),
        "weather.lat",
        errors,
        default=defaults["lat"],
        min_value=-90,
        max_value=90,
    )
    out["lon"] = _float(
        cfg.get("lon"),
        "weather.lon",
        errors,
        default=defaults["lon"],
        min_value=-180,
        max_value=180,
    )
    out["units"] = _str(
        cfg.get("units"),
        "weather.units",
        errors,
        default=defaults["units"],
        choices=WEATHER_UNITS,
    )
    out["timeoutSeconds"] = _float(
        cfg.get("timeoutSeconds"),
        "weather.timeoutSeconds",
        errors,
        default=defaults["timeoutSeconds"],
        min_value=0.1,
    )
    out["cacheTtlSeconds"] = _int(
        cfg.get("cacheTtlSeconds"),
        "weather.cacheTtlSeconds",
        errors,
        default=defaults["cacheTtlSeconds"],
        min_value=0,
    )
    return out


def _validate_clock(cfg: Dict, defaults: Dict, errors: List[str]) -> Dict:
    _warn_unknown_keys("clock", cfg, defaults.keys())
    return {
        "enabled": _bool(
            cfg.get("enabled"), "clock.enabled", errors, default=defaults["enabled"]
        ),
        "format": _str(
            cfg.get("format"), "clock.format", errors, default=defaults["format"]
        ),
        "showDate": _bool(
            cfg.get("showDate"), "clock.showDate", errors, default=defaults["showDate"]
        ),
        "dateFormat": _str(
            cfg.get("dateFormat"),
            "clock.dateFormat",
            errors,
            default=defaults["dateFormat"],
        ),
    }


def _validate_albums(cfg: Dict, defaults: Dict, errors: List[str]) -> Dict:
    _warn_unknown_keys("albums", cfg, defaults.keys())
    return {
        "enabled": _bool(
            cfg.get("enabled"), "albums.enabled", errors, default=defaults["enabled"]
        ),
        "showAlbumName": _bool(
            cfg.get("showAlbumName"),
            "albums.showAlbumName",
            errors,
            default=defaults["showAlbumName"],
        ),
        "showPhotoDate": _bool(
            cfg.get("showPhotoDate"),
            "albums.showPhotoDate",
            errors,
            default=defaults["showPhotoDate"],
        ),
        "dateFormat": _str(
            cfg.get("dateFormat"),
            "albums.dateFormat",
            errors,
            default=defaults["dateFormat"],
        ),
    }


def _validate_google_photos(cfg: Dict, defaults: Dict, errors: List[str]) -> Dict:
    _warn_unknown_keys("googlePhotos", cfg, defaults.keys())
    out = {}
    out["enabled"] = _bool(
        cfg.get("enabled"), "googlePhotos.enabled", errors, default=defaults["enabled"]
    )
    out["clientId"] = _str(
        cfg.get("clientId"), "googlePhotos.clientId", errors, default=defaults["clientId"]
    )
    out["clientSecret"] = _str(
        cfg.get("clientSecret"),
        "googlePhotos.clientSecret",
        errors,
        default=defaults["clientSecret"],
    )
    out["albumIds"] = _str_list(
        cfg.get("albumIds"), "googlePhotos.albumIds", errors, default=defaults["albumIds"]
    )
    # Milliseconds, like the front-end timings.
    out["syncInterval"] = _int(
        cfg.get("syncInterval"),
        "googlePhotos.syncInterval",
        errors,
        default=defaults["syncInterval"],
        min_value=1000,
    )
    out["tokenFile"] = _str(
        cfg.get("tokenFile"), "googlePhotos.tokenFile", errors, default=defaults["tokenFile"]
    )
    out["downloadSize"] = _str(
        cfg.get("downloadSize"),
        "googlePhotos.downloadSize",
        errors,
        default=defaults["downloadSize"],
    )
    return out


def _validate_watcher(cfg: Dict, defaults: Dict, errors: List[str]) -> Dict:
    _warn_unknown_keys("watcher", cfg, defaults.keys())
    return {
        "enabled": _bool(
            cfg.get("enabled"), "watcher.enabled", errors, default=defaults["enabled"]
        ),
        "debounceSeconds": _float(
            cfg.get("debounceSeconds"),
            "watcher.debounceSeconds",
            errors,
            default=defaults["debounceSeconds"],
            min_value=0.0,
        ),
        "queueSize": _int(
            cfg.get("queueSize"),
            "watcher.queueSize",
            errors,
            default=defaults["queueSize"],
            min_value=1,
        ),
    }


def _validate_scanner(cfg: Dict, defaults: Dict, errors: List[str]) -> Dict:
    _warn_unknown_keys("scanner", cfg, defaults.keys())
    return {
        "incremental": _bool(
            cfg.get("incremental"),
            "scanner.incremental",
            errors,
            default=defaults["incremental"],
        ),
    }


def _validate_logging(cfg: Dict, defaults: Dict, errors: List[str]) -> Dict:
    _warn_unknown_keys("logging", cfg, defaults.keys())
    out = {}
    level = _str(cfg.get("level"), "logging.level", errors, default=defaults["level"])
    if isinstance(level, str):
        level = level.upper()
        if level not in LOGGING_LEVELS:
            errors.append(
                f"logging.level: unsupported value '{level}' (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
            )
            level = defaults["level"]
    out["level"] = level
    out["logDir"] = _str(cfg.get("logDir"), "logging.logDir", errors, default=None)
    out["logMaxBytes"] = _int(
        cfg.get("logMaxBytes"),
        "logging.logMaxBytes",
        errors,
        default=defaults["logMaxBytes"],
        min_value=1024,
    )
    out["logBackupCount"] = _int(
        cfg.get("logBackupCount"),
        "logging.logBackupCount",
        errors,
        default=defaults["logBackupCount"],
        min_value=0,
    )
    out["levels"] = _dict(cfg.get("levels"), "logging.levels", errors)
    return out


SECTION_VALIDATORS = {
    "weather": _validate_weather,
    "clock": _validate_clock,
    "albums": _validate_albums,
    "googlePhotos": _validate_google_photos,
    "watcher": _validate_watcher,
    "scanner": _validate_scanner,
    "logging": _validate_logging,
}


def validate_config(raw: Dict) -> Dict:
    """Merges a raw configuration mapping over the defaults, section by section.

    Missing keys keep their default value. Raises ConfigError listing every
    invalid value.
    """
    defaults = default_config()
    errors: List[str] = []
    if not isinstance(raw, dict):
        raise ConfigError(
            f"Invalid configuration: root must be a mapping, got {type(raw).__name__}"
        )

    top_level = {k: v for k, v in raw.items() if k not in SECTION_VALIDATORS}
    out = _validate_top_level(top_level, defaults, errors)
    for section, validator in SECTION_VALIDATORS.items():
        section_raw = _dict(raw.get(section), section, errors)
        out[section] = validator(section_raw, defaults[section], errors)
        _log_config_diff(section, section_raw, out[section])

    if errors:
        msg = "Invalid configuration:\n" + "\n".join(f" - {e}" for e in errors)
        logger.error(msg)
        raise ConfigError(msg)
    return out


def write_default_config(config_file_path: str) -> None:
    with open(config_file_path, "w") as f:
        yaml.dump(default_config(), f, sort_keys=False, default_flow_style=False, indent=2)


def config_load(config_file_path: str) -> Dict:
    """Loads the YAML configuration file, creating it with defaults when missing.

    photosDir is returned as an absolute path, relative paths being resolved
    against the directory holding the configuration file.
    """
    try:
        with open(config_file_path, "r") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(
            f"Configuration file {config_file_path} not found. Creating it with default values."
        )
        raw = {}
        try:
            write_default_config(config_file_path)
            logger.info(
                f"Created {config_file_path}. Please edit it with your preferences."
            )
        except OSError as e:
            logger.error(f"Failed to write default config file {config_file_path}: {e}")
    except yaml.YAMLError as e:
        logger.error(f"Error parsing YAML configuration file {config_file_path}: {e}")
        raise

    config = validate_config(raw)
    config_dir = os.path.dirname(os.path.abspath(config_file_path))
    config["photosDir"] = os.path.normpath(
        os.path.join(config_dir, os.path.expanduser(config["photosDir"]))
    )
    return config


def public_config(config: Dict) -> Dict:
    """Returns a copy of the configuration that is safe to hand to browsers."""
    out = copy.deepcopy(config)
    for section, key in SECRET_KEYS:
        if out.get(section, {}).get(key):
            out[section][key] = REDACTED
    return out


def weather_api_key_configured(weather_config: Dict) -> bool:
    api_key = weather_config.get("apiKey")
    return bool(api_key) and api_key != WEATHER_API_KEY_PLACEHOLDER
