"""Keep-alive pinger: calls SERVER_URL every 10-14 minutes so the host stays warm."""
import random
import logging
import threading
from typing import Optional

import requests

from config import config

logger = logging.getLogger(__name__)

MIN_INTERVAL = 10 * 60
MAX_INTERVAL = 14 * 60
REQUEST_TIMEOUT = 30

_timer: Optional[threading.Timer] = None
_lock = threading.Lock()


def random_interval() -> float:
    return random.uniform(MIN_INTERVAL, MAX_INTERVAL)


def ping_once() -> Optional[int]:
    """Ping SERVER_URL once. Returns the status code, or None if nothing was sent."""
    url = config.SERVER_URL
    if not url:
        logger.warning("ping_once: SERVER_URL not set in env")
        return None

    headers = {}
    if config.API_KEY:
        headers["x-api-key"] = config.API_KEY

    try:
        response = requests.get(url, headers=headers, timeout=REQUEST_TIMEOUT)
    except requests.RequestException as e:
        logger.warning(f"Ping failed for {url}: {e}")
        return None
    logger.info(f"Pinged {url} status {response.status_code}")
    return response.status_code


def _tick():
    ping_once()
    with _lock:
        if _timer is not None:
            _schedule_next()


def _schedule_next():
    global _timer
    _timer = threading.Timer(random_interval(), _tick)
    _timer.daemon = True
    _timer.start()


def start_ping_loop() -> None:
    if not config.SERVER_URL:
        raise RuntimeError("SERVER_URL not set in environment")
    with _lock:
        if _timer is not None:
            return
        _schedule_next()


def stop_ping_loop() -> None:
    global _timer
    with _lock:
        if _timer is not None:
            _timer.cancel()
            _timer = None


def is_running() -> bool:
    return _timer is not None
