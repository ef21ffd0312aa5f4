"""
Sales-bot flow engine API entry point
"""
import logging

import uvicorn
from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

from salesbot_engine.api import create_default_app
from salesbot_engine.config import EngineSettings


if __name__ == "__main__":
    settings = EngineSettings.from_env()
    uvicorn.run(
        create_default_app(settings),
        host=settings.api_host,
        port=settings.api_port,
        log_level="info"
    )
