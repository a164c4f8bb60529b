"""
HTTP health checks against individual instances.
"""

import logging
from typing import Optional

import requests

from .config import HealthCheckConfig, status_matches

logger = logging.getLogger(__name__)


class HttpHealthChecker:
    """Binary pass/fail check of one target against the configured path and matcher."""

    def __init__(self, config: HealthCheckConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()

    def url_for(self, host: str, traffic_port: int) -> str:
        port = traffic_port if self.config.port == "traffic-port" else int(self.config.port)
        return f"{self.config.protocol.lower()}://{host}:{port}{self.config.path}"

    def check(self, host: str, traffic_port: int) -> bool:
        """
        Run a single health check.

        Args:
            host: Target address
            traffic_port: Port the target serves traffic on

        Returns:
            True if the response status matches the configured matcher
        """
        url = self.url_for(host, traffic_port)
        try:
            response = self.session.get(url, timeout=self.config.timeout, allow_redirects=False)
        except requests.exceptions.RequestException as e:
            logger.debug(f"Health check {url} failed: {e}")
            return False

        if status_matches(self.config.matcher, response.status_code):
            return True

        logger.debug(f"Health check {url}: status {response.status_code} does not match {self.config.matcher}")
        return False
