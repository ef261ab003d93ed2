# run.py
import logging

import uvicorn

from app.core.config import settings

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logging.getLogger("web").info(f"Server is running on port {settings.app_port}")

uvicorn.run("app.main:app", host=settings.app_host, port=settings.app_port, reload=False)
