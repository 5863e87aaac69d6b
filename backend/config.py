import yaml
import os
import copy
import stat
import logging
from typing import Any

logger = logging.getLogger(__name__)

if os.environ.get("SURVEY_RELAY_APPDATA_DIR"):
    CONFIG_DIR = os.environ["SURVEY_RELAY_APPDATA_DIR"]
else:
    CONFIG_DIR = os.path.join(os.path.expanduser('~'), '.survey-relay')

CONFIG_PATH = os.path.join(CONFIG_DIR, "config.yaml")

QUEUE_MAX_SIZE_BOUNDS = (1, 10000)
QUEUE_MAX_WAIT_BOUNDS = (1, 3600)


DEFAULT_CONFIG = {
    "environment": "development",  # "development" | "test" | "production"
    "queue": {
        "max_size": 100,
        "max_wait_seconds": 60,
    },
    "workbook": {
        "graph_base_url": "https://graph.microsoft.com/v1.0",
        "site_hostname": "",
        "site_path": "/sites/WebsiteEvaluation",
        "drive_name": "Documents",
        "file_path": "/Website Evaluation.xlsx",
        "worksheet_name": "Sheet1",
        "table_name": "Table1",
        "client_id": "",
        "access_token": "",
        "request_timeout_seconds": 20,
    },
    "security": {
        "cors_origins": [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5500",
            "https://ataloss.org",
            "https://www.ataloss.org",
        ],
        "trusted_hosts": [
            "127.0.0.1",
            "localhost",
            "testserver",
        ],
        "trusted_proxy_ips": ["127.0.0.1"],
        "debug_endpoints_enabled": False,
        "debug_password": "",
        "rate_limit": {
            "enabled": True,
            "window_seconds": 900,
            "max_requests": 100,
        },
    },
}

_config_cache = None


def _clamp_number(value: Any, default: float, min_value: float, max_value: float) -> float:
    try:
        parsed = float(value)
    except Exception:
        parsed = float(default)
    return max(min_value, min(max_value, parsed))


def _ensure_private_permissions() -> None:
    if os.name == "nt":
        return
    try:
        if os.path.exists(CONFIG_PATH):
            mode = stat.S_IMODE(os.stat(CONFIG_PATH).st_mode)
            if mode != 0o600:
                os.chmod(CONFIG_PATH, 0o600)
    except Exception as e:
        logger.debug(f"Could not harden CONFIG_PATH permissions: {e}")


def _merge_defaults(original: dict) -> dict:
    # Deep-merge all known defaults so minimal/legacy configs are still fully usable.
    merged = {**DEFAULT_CONFIG, **original}
    for section in ("queue", "workbook", "security"):
        merged[section] = {
            **DEFAULT_CONFIG.get(section, {}),
            **(original.get(section, {}) if isinstance(original.get(section), dict) else {}),
        }
    merged["security"]["rate_limit"] = {
        **DEFAULT_CONFIG["security"]["rate_limit"],
        **(merged["security"].get("rate_limit", {}) if isinstance(merged["security"].get("rate_limit"), dict) else {}),
    }
    return merged


def _apply_env_overrides(config: dict) -> dict:
    """Environment wins over the file. Overrides live only in memory and are never saved."""
    effective = copy.deepcopy(config)

    env_name = str(os.environ.get("SURVEY_RELAY_ENV") or "").strip().lower()
    if env_name:
        effective["environment"] = env_name

    debug_password = os.environ.get("SURVEY_RELAY_DEBUG_PASSWORD")
    if debug_password is not None:
        effective["security"]["debug_password"] = debug_password

    debug_enabled = os.environ.get("SURVEY_RELAY_ENABLE_DEBUG_ENDPOINTS")
    if debug_enabled is not None:
        effective["security"]["debug_endpoints_enabled"] = debug_enabled.strip().lower() == "true"

    access_token = os.environ.get("SURVEY_RELAY_ACCESS_TOKEN")
    if access_token:
        effective["workbook"]["access_token"] = access_token

    env_hosts = str(os.environ.get("SURVEY_RELAY_TRUSTED_HOSTS") or "").strip()
    if env_hosts:
        effective["security"]["trusted_hosts"] = [h.strip() for h in env_hosts.split(",") if h.strip()]

    lo, hi = QUEUE_MAX_SIZE_BOUNDS
    effective["queue"]["max_size"] = int(_clamp_number(effective["queue"].get("max_size"), 100, lo, hi))
    lo, hi = QUEUE_MAX_WAIT_BOUNDS
    effective["queue"]["max_wait_seconds"] = _clamp_number(effective["queue"].get("max_wait_seconds"), 60, lo, hi)
    return effective


def load_config(force_reload: bool = False) -> dict:
    global _config_cache
    if _config_cache is not None and not force_reload:
        return _apply_env_overrides(_config_cache)

    if not os.path.exists(CONFIG_PATH):
        _config_cache = copy.deepcopy(DEFAULT_CONFIG)
        try:
            save_config(_config_cache)
        except OSError as e:
            # Runtime config remains usable even if the file can't be written.
            logger.warning(f"Could not write default config to {CONFIG_PATH}: {e}")
    else:
        with open(CONFIG_PATH, "r") as f:
            raw = yaml.safe_load(f)
        original = raw if isinstance(raw, dict) else {}
        _config_cache = _merge_defaults(original)
        if _config_cache != original:
            try:
                save_config(_config_cache)
            except OSError as e:
                logger.warning(f"Could not backfill config defaults in {CONFIG_PATH}: {e}")
        else:
            _ensure_private_permissions()

    return _apply_env_overrides(_config_cache)


def save_config(config: dict):
    global _config_cache
    merged = _merge_defaults(config if isinstance(config, dict) else {})
    _config_cache = merged
    os.makedirs(CONFIG_DIR, exist_ok=True)
    with open(CONFIG_PATH, "w") as f:
        yaml.dump(merged, f, default_flow_style=False)
    _ensure_private_permissions()


def is_production(config: dict | None = None) -> bool:
    cfg = config if isinstance(config, dict) else load_config()
    return str(cfg.get("environment") or "").strip().lower() == "production"
