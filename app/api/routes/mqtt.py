# app/api/routes/mqtt.py
from __future__ import annotations

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, StrictStr
from starlette.concurrency import run_in_threadpool

from app.services.mqtt_bridge import MqttConnector

router = APIRouter()
log = logging.getLogger("web")

INVALID_BODY = "invalid json body"
PUBLISHED = "MQTT message published"

_decoder = json.JSONDecoder()


class PublishRequest(BaseModel):
    # отсутствующее поле — пустая строка, как и null
    topic: StrictStr = ""
    payload: StrictStr = ""


def decode_publish_request(raw: bytes) -> PublishRequest:
    """
    Разбор тела запроса:
      - читаем только первое JSON-значение, хвост после него игнорируем;
      - null → пустой запрос;
      - имена полей без учёта регистра ("Topic" == "topic"), последнее побеждает;
      - null в поле оставляет значение по умолчанию.
    Бросает ValueError (JSONDecodeError / ValidationError), если тело не разбирается.
    """
    text = raw.decode("utf-8", errors="replace").lstrip()
    value, _end = _decoder.raw_decode(text)
    if value is None:
        return PublishRequest()
    if not isinstance(value, dict):
        return PublishRequest.model_validate(value)  # → ValidationError

    fields: Dict[str, Any] = {}
    for key, item in value.items():
        name = key.lower()
        if name in PublishRequest.model_fields and item is not None:
            fields[name] = item
    return PublishRequest.model_validate(fields)


def get_connector(request: Request) -> MqttConnector:
    return request.app.state.mqtt_connector


@router.post("/mqtt", response_class=PlainTextResponse)
async def publish_mqtt(request: Request, connector: MqttConnector = Depends(get_connector)):
    raw = await request.body()
    try:
        req = decode_publish_request(raw)
    except ValueError as e:
        log.warning(f"bad publish request: {e}")
        return PlainTextResponse(INVALID_BODY, status_code=400)

    # publish блокирует до подтверждения — уводим в пул потоков
    result = await run_in_threadpool(connector.publish, req.topic, req.payload)

    if not result.ok and request.app.state.settings.report_publish_errors:
        return PlainTextResponse(f"MQTT publish failed: {result.error}", status_code=502)
    return PlainTextResponse(PUBLISHED)


@router.get("/mqtt/status")
def mqtt_status(connector: MqttConnector = Depends(get_connector)):
    return connector.status()
