import os
from typing import Any, Dict

import yaml

ROOT_DIR = os.path.dirname(__file__)


def _load_dotenv(path: str, existing_env: set[str], allow_override: bool = False) -> None:
    if not os.path.exists(path):
        return
    try:
        with open(path, "r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if line.startswith("export "):
                    line = line[7:].strip()
                if "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                if not key:
                    continue
                current_value = str(os.environ.get(key, "") or "").strip()
                # Do not treat empty pre-existing env vars as authoritative.
                if key in existing_env and current_value:
                    continue
                if key in os.environ and (not allow_override) and current_value:
                    continue
                value = value.strip()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
                    value = value[1:-1]
                os.environ[key] = value
    except OSError:
        return


_EXISTING_ENV = set(os.environ.keys())
_load_dotenv(os.path.join(ROOT_DIR, ".env"), _EXISTING_ENV, allow_override=False)
_load_dotenv(os.path.join(ROOT_DIR, ".env.local"), _EXISTING_ENV, allow_override=True)

APP_ENV = os.getenv("APP_ENV", "dev")
CONFIG_PATH = os.getenv("CONFIG_PATH", os.path.join(ROOT_DIR, "config.yaml"))


def _load_config(path: str, env: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw_data: Any = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError):
        return {}
    data = raw_data or {}
    if isinstance(data, dict) and env in data and isinstance(data[env], dict):
        return dict(data[env])
    if isinstance(data, dict):
        return dict(data)
    return {}


_CONFIG = _load_config(CONFIG_PATH, APP_ENV)


def _get(name: str, default: Any) -> Any:
    if name in os.environ:
        return os.environ[name]
    if isinstance(_CONFIG, dict):
        if name in _CONFIG:
            return _CONFIG[name]
        lower = name.lower()
        if lower in _CONFIG:
            return _CONFIG[lower]
    return default


def _get_viz_section() -> Dict[str, Any]:
    if isinstance(_CONFIG, dict):
        section = _CONFIG.get("visualize") or _CONFIG.get("VISUALIZE")
        if isinstance(section, dict):
            return section
    return {}


def _get_viz(name: str, default: Any) -> Any:
    # VIZ_* keys may also live in a nested `visualize:` YAML section without the prefix.
    value = _get(name, None)
    if value is not None:
        return value
    section = _get_viz_section()
    short = name[len("VIZ_"):].lower() if name.startswith("VIZ_") else name.lower()
    if short in section:
        return section[short]
    return default


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes"}


API_HOST = _get("API_HOST", "127.0.0.1")
API_PORT = int(_get("API_PORT", "8020"))
_root_path = str(_get("ROOT_PATH", "")).strip()
if _root_path and not _root_path.startswith("/"):
    _root_path = f"/{_root_path}"
ROOT_PATH = _root_path.rstrip("/") if _root_path else ""
APP_VERSION = str(_get("APP_VERSION", "0.1.0"))
LOG_LEVEL = str(_get("LOG_LEVEL", "INFO")).strip().upper() or "INFO"

CORS_ORIGINS = [
    origin.strip()
    for origin in str(
        _get(
            "CORS_ORIGINS",
            "http://127.0.0.1:3000,http://localhost:3000",
        )
    ).split(",")
    if origin.strip()
]

VIZ_RENDER_ENGINE = str(_get_viz("VIZ_RENDER_ENGINE", "py3Dmol")).strip() or "py3Dmol"
VIZ_CONVERSION_TOOLKIT = str(_get_viz("VIZ_CONVERSION_TOOLKIT", "rdkit")).strip() or "rdkit"
VIZ_DEPENDENCY_TIMEOUT_SECONDS = max(1.0, float(_get_viz("VIZ_DEPENDENCY_TIMEOUT_SECONDS", "30")))
VIZ_FETCH_TIMEOUT_SECONDS = max(1.0, float(_get_viz("VIZ_FETCH_TIMEOUT_SECONDS", "30")))
VIZ_PUBCHEM_BASE_URL = str(
    _get_viz("VIZ_PUBCHEM_BASE_URL", "https://pubchem.ncbi.nlm.nih.gov/rest/pug/compound")
).strip().rstrip("/")
VIZ_RCSB_BASE_URL = str(_get_viz("VIZ_RCSB_BASE_URL", "https://files.rcsb.org/download")).strip().rstrip("/")
VIZ_USER_AGENT = str(_get_viz("VIZ_USER_AGENT", f"molviz/{APP_VERSION}")).strip()
VIZ_RENDER_SETTLE_SECONDS = max(0.0, float(_get_viz("VIZ_RENDER_SETTLE_SECONDS", "0.1")))
VIZ_SURFACE_WIDTH = max(1, int(_get_viz("VIZ_SURFACE_WIDTH", "640")))
VIZ_SURFACE_HEIGHT = max(1, int(_get_viz("VIZ_SURFACE_HEIGHT", "500")))
VIZ_PAYLOAD_CACHE_MAX_ENTRIES = max(0, int(_get_viz("VIZ_PAYLOAD_CACHE_MAX_ENTRIES", "128")))
VIZ_PAYLOAD_CACHE_TTL_SECONDS = max(0.0, float(_get_viz("VIZ_PAYLOAD_CACHE_TTL_SECONDS", "0")))
VIZ_RENDER_CACHE_MAX_ENTRIES = max(0, int(_get_viz("VIZ_RENDER_CACHE_MAX_ENTRIES", "512")))
VIZ_RENDER_CACHE_TTL_SECONDS = max(0.0, float(_get_viz("VIZ_RENDER_CACHE_TTL_SECONDS", "0")))
VIZ_SMILES_EMBED_3D = _parse_bool(_get_viz("VIZ_SMILES_EMBED_3D", "true"), True)
