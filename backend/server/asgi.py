"""
ASGI entry point for the connection API.

Used by uvicorn (`uvicorn server.asgi:app`). Variables from a local .env
file are applied before the configuration is read.
"""

from dotenv import load_dotenv

load_dotenv()

# pylint: disable=wrong-import-position
from config import AppConfig
from observability.logger import log_event
from server.app import create_app

config = AppConfig.load_from_env()
app = create_app(config)

log_event({
    "event_type": "APP_CREATED",
    "env": config.env,
    "engine_configured": config.easytier_lib_path is not None,
    "tun_device": config.tun_device_name,
})
