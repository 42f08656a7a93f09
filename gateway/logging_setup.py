"""Process-wide logging setup for the gateway."""

import logging
import os

from gateway.config import GatewayConfig

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(config: GatewayConfig, log_name: str = "gateway.log") -> logging.Logger:
    """Attach a file handler and a console handler to the root logger once."""
    os.makedirs(config.log_dir, exist_ok=True)
    root = logging.getLogger()
    root.setLevel(config.log_level)

    log_path = os.path.join(config.log_dir, log_name)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(log_path):
            return root

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console.setLevel(logging.WARNING)
    root.addHandler(console)
    return root
