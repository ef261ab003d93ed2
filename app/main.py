# app/main.py
from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI

from app.api.routes.mqtt import router as mqtt_router
from app.core.config import Settings, settings as default_settings
from app.services.mqtt_bridge import MqttConnector


def create_app(settings: Optional[Settings] = None, connector: Optional[MqttConnector] = None) -> FastAPI:
    """
    Собрать приложение. Коннектор живёт в app.state и отдаётся роутам
    через Depends; к брокеру подключаемся лениво, на первом запросе.
    """
    settings = settings or default_settings
    connector = connector or MqttConnector(settings)

    app = FastAPI(title="HTTP → MQTT bridge")
    app.state.settings = settings
    app.state.mqtt_connector = connector

    app.include_router(mqtt_router, tags=["mqtt"])

    @app.on_event("startup")
    def _startup():
        logging.getLogger("web").info(f"publishing to {settings.broker_url}, listening on :{settings.app_port}")

    @app.on_event("shutdown")
    def _shutdown():
        connector.close()

    return app


app = create_app()
