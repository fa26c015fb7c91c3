# backend/unit_settings.py

"""
Unit engine configuration.

Values come from backend/.env (python-dotenv) and the process environment:

    MONGO_URL                     mongodb://localhost:27017
    DB_NAME                       catalog
    UNITS_COLLECTION              units
    UNIT_CONVERSIONS_COLLECTION   unit_conversions
    SMALL_VOLUME_UNIT_IDS         2,13,30,31,33
    BRIDGE_UNIT_IDS               (empty = generic units without a form)
    SHADOW_GENERIC_NAMESAKES      true
    ANOMALY_LOG_SIZE              100
    LOG_LEVEL                     INFO
"""

from pathlib import Path
from typing import List, Mapping, Optional, Union
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from unit_options import DEFAULT_SMALL_VOLUME_UNIT_IDS

ROOT_DIR = Path(__file__).parent

TRUE_VALUES = {"1", "true", "yes", "on"}


class UnitEngineSettings(BaseModel):
    """Settings for the conversion engine and its Mongo providers"""
    mongo_url: str = "mongodb://localhost:27017"
    db_name: str = "catalog"
    units_collection: str = "units"
    conversions_collection: str = "unit_conversions"
    small_volume_unit_ids: List[int] = Field(default_factory=lambda: list(DEFAULT_SMALL_VOLUME_UNIT_IDS))
    bridge_unit_ids: Optional[List[int]] = None
    shadow_generic_namesakes: bool = True
    anomaly_log_size: int = Field(default=100, ge=0)
    log_level: str = "INFO"

    @field_validator("small_volume_unit_ids", "bridge_unit_ids", mode="before")
    @classmethod
    def parse_id_list(cls, value: Union[str, List[int], None]):
        if value is None or not isinstance(value, str):
            return value
        return [int(part) for part in value.split(",") if part.strip()]

    @field_validator("shadow_generic_namesakes", mode="before")
    @classmethod
    def parse_flag(cls, value):
        if isinstance(value, str):
            return value.strip().lower() in TRUE_VALUES
        return value

    @field_validator("log_level")
    @classmethod
    def upper_log_level(cls, value: str) -> str:
        return value.upper()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "UnitEngineSettings":
        env = os.environ if environ is None else environ
        mapping = {
            "mongo_url": "MONGO_URL",
            "db_name": "DB_NAME",
            "units_collection": "UNITS_COLLECTION",
            "conversions_collection": "UNIT_CONVERSIONS_COLLECTION",
            "small_volume_unit_ids": "SMALL_VOLUME_UNIT_IDS",
            "bridge_unit_ids": "BRIDGE_UNIT_IDS",
            "shadow_generic_namesakes": "SHADOW_GENERIC_NAMESAKES",
            "anomaly_log_size": "ANOMALY_LOG_SIZE",
            "log_level": "LOG_LEVEL",
        }
        values = {field: env[name] for field, name in mapping.items() if env.get(name, "").strip()}
        return cls(**values)


def load_settings(env_file: Optional[Path] = None) -> UnitEngineSettings:
    """Load backend/.env (if present) into the environment, then read settings"""
    load_dotenv(env_file or ROOT_DIR / '.env')
    return UnitEngineSettings.from_env()
