"""
Configuración del subsistema de sincronización.
Valores por defecto, sobrescritos por config/config.yaml y luego por variables de entorno.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field
from rich.logging import RichHandler

load_dotenv()
logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/config.yaml"

# Variable de entorno -> campo de SyncSettings
ENV_VARS = {
    "STORYBOARD_API_URL": "api_base_url",
    "STORYBOARD_REQUEST_TIMEOUT": "request_timeout",
    "STORYBOARD_GENERATION_TIMEOUT": "generation_timeout",
    "STORYBOARD_POLL_INTERVAL": "poll_interval",
    "STORYBOARD_MAX_POLL_FAILURES": "max_poll_failures",
    "STORYBOARD_MAX_STREAM_FAILURES": "max_stream_failures",
    "STORYBOARD_AUTOSAVE_QUIET_PERIOD": "autosave_quiet_period",
    "STORYBOARD_VERIFY_MAX_RETRIES": "verify_max_retries",
    "STORYBOARD_VERIFY_BACKOFF": "verify_backoff",
    "STORYBOARD_MIN_ARTIFACT_SIZE": "min_artifact_size",
    "STORYBOARD_LIST_CACHE_MAX_AGE": "list_cache_max_age",
    "AI_PROVIDER": "default_provider",
    "LOG_LEVEL": "log_level",
}


class SyncSettings(BaseModel):
    """Parámetros de red, tiempos y reintentos."""
    api_base_url: str = "http://localhost:3001/api"
    request_timeout: float = Field(30.0, gt=0)
    # Las peticiones de generación pueden tardar minutos
    generation_timeout: float = Field(600.0, gt=0)
    poll_interval: float = Field(6.0, gt=0)
    max_poll_failures: int = Field(5, ge=1)
    max_stream_failures: int = Field(3, ge=1)
    autosave_quiet_period: float = Field(2.0, gt=0)
    verify_max_retries: int = Field(3, ge=0)
    verify_backoff: float = Field(2.0, ge=0)
    min_artifact_size: int = Field(100, ge=1)
    list_cache_max_age: float = Field(5.0, ge=0)
    default_provider: str = "openai"
    log_level: str = "INFO"


def _load_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    """Carga la sección `sync` del YAML de configuración."""
    config_path = Path(path)
    if not config_path.exists():
        return {}
    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return data.get("sync", {}) or {}


def load_settings(
    config_path: Union[str, Path] = DEFAULT_CONFIG_PATH,
    overrides: Optional[Dict[str, Any]] = None,
) -> SyncSettings:
    """
    Construye la configuración efectiva.

    Args:
        config_path: Ruta al YAML (se ignora si no existe)
        overrides: Valores explícitos con prioridad máxima

    Returns:
        SyncSettings validado
    """
    values: Dict[str, Any] = dict(_load_yaml(config_path))

    for env_name, field_name in ENV_VARS.items():
        raw = os.getenv(env_name)
        if raw:
            values[field_name] = raw

    if overrides:
        values.update(overrides)

    settings = SyncSettings(**values)
    logger.debug(f"Configuración cargada: {settings.model_dump()}")
    return settings


def configure_logging(level: Optional[str] = None) -> None:
    """Configura logging con salida de rich."""
    logging.basicConfig(
        level=(level or os.getenv("LOG_LEVEL", "INFO")).upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
