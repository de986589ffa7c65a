# cima_nomenclator/config.py
from pathlib import Path
from typing import Optional
import logging

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# 1) Carga el .env en memoria
ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / ".env")

NOMENCLATOR_DUMP_URL = "https://listadomedicamentos.aemps.gob.es/prescripcion.zip"
CIMA_REST_URL = "https://cima.aemps.es/cima/rest"


class Settings(BaseSettings):
    # Configuración de Pydantic v2
    model_config = SettingsConfigDict(
        case_sensitive=False,
    )

    # Directorios de trabajo (XML) y de salida (CSV)
    work_dir: Path = Field(Path("nomenclator_data"), description="Directorio donde se extrae el ZIP")
    output_dir: Path = Field(Path("csv_output"), description="Directorio de los CSV generados")

    # Paralelismo; si no se indica se usa el número de CPUs
    concurrency: Optional[int] = Field(None, description="Tareas de parseo simultáneas")

    # Descarga del nomenclátor
    nomenclator_url: AnyHttpUrl = Field(NOMENCLATOR_DUMP_URL, description="URL del volcado ZIP")
    download_timeout: float = Field(120.0, description="Timeout de la descarga en segundos")

    # API REST de CIMA
    cima_base_url: str = Field(CIMA_REST_URL, description="URL base de la API CIMA")
    api_timeout: float = Field(15.0, description="Timeout de las peticiones REST en segundos")
    user_agent: str = Field("cima-nomenclator/0.1.0", description="User-Agent de las peticiones")

    # Logging
    log_level: str = Field("INFO", description="Nivel de log")

    @field_validator("concurrency")
    def concurrency_must_be_positive(cls, v):
        if v is not None and v < 1:
            raise ValueError("La concurrencia debe ser al menos 1")
        return v

    @field_validator("download_timeout", "api_timeout")
    def timeout_must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("El timeout debe ser mayor que 0")
        return v

    @field_validator("cima_base_url")
    def strip_trailing_slash(cls, v):
        return v.rstrip("/")

    @field_validator("log_level", mode="before")
    def normalize_log_level(cls, v):
        level = str(v).upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Nivel de log desconocido: {v}")
        return level


# Instanciamos
settings = Settings()
