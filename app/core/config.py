# app/core/config.py
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Tuple

import paho.mqtt.client as mqtt
from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("config")

# схема из MQTT_PROTOCOL → (transport paho, нужен ли TLS)
SCHEMES = {
    "tcp": ("tcp", False),
    "mqtt": ("tcp", False),
    "ssl": ("tcp", True),
    "tls": ("tcp", True),
    "mqtts": ("tcp", True),
    "ws": ("websockets", False),
    "wss": ("websockets", True),
}

# MQTT_PROTOCOL_VERSION → константа paho
PROTOCOL_VERSIONS = {
    3: mqtt.MQTTv31,
    4: mqtt.MQTTv311,
    5: mqtt.MQTTv5,
}

DEFAULT_PROTOCOL_VERSION = 3

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

# поле → (приведение, допустимость); кривое значение → дефолт + warning
_NUMERIC: Dict[str, Tuple[Callable[[Any], Any], Callable[[Any], bool]]] = {
    "mqtt_port": (int, lambda v: 1 <= v <= 65535),
    "mqtt_keepalive": (int, lambda v: v >= 1),
    "connect_timeout": (float, lambda v: v > 0),
    "publish_timeout": (float, lambda v: v > 0),
    "reconnect_delay": (float, lambda v: v >= 0),
    "reconnect_max_delay": (float, lambda v: v >= 0),
    "reconnect_backoff": (float, lambda v: v >= 1.0),
    "reconnect_max_attempts": (int, lambda v: v >= 0),
}


class Settings(BaseSettings):
    """
    Настройки процесса. Читаются один раз при старте из окружения
    и (если есть) из локального .env. Окружение важнее файла.
    Пустые переменные считаются незаданными.

    Настройки брокера процесс не роняют: нечитаемое или неподдерживаемое
    значение заменяется дефолтом с предупреждением в лог.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
        populate_by_name=True,
        frozen=True,
    )

    # ───────── брокер ─────────
    mqtt_host: str = Field(default="localhost", validation_alias="MQTT_URL")
    mqtt_port: int = Field(default=1883, validation_alias="MQTT_PORT")
    mqtt_protocol: str = Field(default="tcp", validation_alias="MQTT_PROTOCOL")
    mqtt_protocol_version: int = Field(default=DEFAULT_PROTOCOL_VERSION, validation_alias="MQTT_PROTOCOL_VERSION")

    mqtt_client_id: str = Field(default="", validation_alias="MQTT_CLIENT_ID")
    mqtt_username: Optional[str] = Field(default=None, validation_alias="MQTT_USERNAME")
    mqtt_password: Optional[str] = Field(default=None, validation_alias="MQTT_PASSWORD")
    mqtt_keepalive: int = Field(default=60, validation_alias="MQTT_KEEPALIVE")

    # таймауты в секундах
    connect_timeout: float = Field(default=10.0, validation_alias="MQTT_CONNECT_TIMEOUT")
    publish_timeout: float = Field(default=10.0, validation_alias="MQTT_PUBLISH_TIMEOUT")

    # ───────── переподключение ─────────
    reconnect_delay: float = Field(default=5.0, validation_alias="MQTT_RECONNECT_DELAY")
    reconnect_max_delay: float = Field(default=5.0, validation_alias="MQTT_RECONNECT_MAX_DELAY")
    reconnect_backoff: float = Field(default=1.0, validation_alias="MQTT_RECONNECT_BACKOFF")
    reconnect_max_attempts: int = Field(default=0, validation_alias="MQTT_RECONNECT_MAX_ATTEMPTS")  # 0 = бесконечно

    # false — HTTP всегда отвечает 200, ошибки публикации только в лог
    report_publish_errors: bool = Field(default=False, validation_alias="MQTT_REPORT_PUBLISH_ERRORS")

    # ───────── HTTP ─────────
    # кривой порт = не сможем слушать, это единственная фатальная ошибка
    app_host: str = Field(default="0.0.0.0", validation_alias="APP_HOST")
    app_port: int = Field(default=3000, ge=1, le=65535, validation_alias="APP_PORT")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    # ───────── валидация ─────────
    @classmethod
    def _fallback(cls, name: str, raw: Any, reason: str) -> Any:
        default = cls.model_fields[name].default
        log.warning(f"{name}={raw!r}: {reason}, using default {default!r}")
        return default

    @field_validator(*_NUMERIC, mode="before")
    @classmethod
    def _numeric_or_default(cls, v: Any, info: ValidationInfo) -> Any:
        name = info.field_name
        cast, allowed = _NUMERIC[name]
        try:
            parsed = cast(str(v).strip()) if isinstance(v, str) else cast(v)
        except (TypeError, ValueError):
            return cls._fallback(name, v, "not a number")
        # 0 для порта — «не задан», молча
        if name == "mqtt_port" and parsed == 0:
            return cls.model_fields[name].default
        if not allowed(parsed):
            return cls._fallback(name, v, "out of range")
        return parsed

    @field_validator("mqtt_protocol", mode="before")
    @classmethod
    def _known_scheme(cls, v: Any) -> Any:
        scheme = str(v).strip().lower()
        if scheme not in SCHEMES:
            return cls._fallback("mqtt_protocol", v, f"unsupported scheme, expected one of {sorted(SCHEMES)}")
        return scheme

    @field_validator("mqtt_protocol_version", mode="before")
    @classmethod
    def _version_default(cls, v: Any) -> Any:
        # дефолт применяется ДО того, как версия попадёт в опции клиента
        try:
            version = int(str(v).strip())
        except ValueError:
            return cls._fallback("mqtt_protocol_version", v, "not a number")
        if version == 0:
            return DEFAULT_PROTOCOL_VERSION
        if version not in PROTOCOL_VERSIONS:
            return cls._fallback("mqtt_protocol_version", v, "unsupported version, expected 3, 4 or 5")
        return version

    @field_validator("report_publish_errors", mode="before")
    @classmethod
    def _flag(cls, v: Any) -> Any:
        if isinstance(v, bool):
            return v
        s = str(v).strip().lower()
        if s in _TRUE:
            return True
        if s in _FALSE:
            return False
        return cls._fallback("report_publish_errors", v, "not a boolean")

    @field_validator("log_level", mode="before")
    @classmethod
    def _known_level(cls, v: Any) -> Any:
        level = str(v).strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            return cls._fallback("log_level", v, "unknown level")
        return level

    # ───────── удобные свойства ─────────
    @property
    def broker_url(self) -> str:
        return f"{self.mqtt_protocol}://{self.mqtt_host}:{self.mqtt_port}/mqtt"

    @property
    def transport(self) -> str:
        return SCHEMES[self.mqtt_protocol][0]

    @property
    def use_tls(self) -> bool:
        return SCHEMES[self.mqtt_protocol][1]

    @property
    def paho_protocol(self) -> int:
        return PROTOCOL_VERSIONS[self.mqtt_protocol_version]


settings = Settings()
