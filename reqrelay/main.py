"""Entry point for reqrelay: build the Redis handle and the HTTP app, serve until stopped."""

from __future__ import annotations

import logging
import sys

from reqrelay.config import get_config
from reqrelay.core.config_store import ModelConfigStore, create_redis_client
from reqrelay.core.logging_config import setup_logging
from reqrelay.web.app import create_app

logger = logging.getLogger(__name__)


def main() -> None:
    config = get_config()
    setup_logging(level=config.logging.level, use_json=config.logging.use_json)
    if not config.redis.url:
        logger.error("REDIS_URL is required")
        sys.exit(1)
    if not config.security.encryption_key:
        logger.warning("ENCRYPTION_KEY not set; API keys are stored and used as given")
    client = create_redis_client(config.redis.url, socket_timeout=config.redis.socket_timeout)
    try:
        app = create_app(config, store=ModelConfigStore(client))
        logger.info("reqrelay listening", extra={"host": config.web.host, "port": config.web.port})
        app.run(host=config.web.host, port=config.web.port, debug=False, threaded=True)
    finally:
        client.close()


if __name__ == "__main__":
    main()
