import logging
import os

import uvicorn

from async_broadcast_service.api import create_app, service_lifespan
from async_broadcast_service.config_loader import core_kwargs, load_settings
from async_broadcast_service.core import BroadcastCore

# Configure logging level from environment
log_level = os.getenv("BROADCAST_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


if __name__ == "__main__":
    settings = load_settings()
    # Create service instance but don't start it yet - let uvicorn handle the event loop
    service = BroadcastCore(**core_kwargs(settings))
    app = create_app(service, api_token=settings.get("api_token"), lifespan=service_lifespan(service))

    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
