"""
Reporter: one HTTPS POST per invocation and handling of the server's reply.

No retry loop; the next scheduled invocation is the retry.
"""

import logging
import random
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import requests

from sitecenter_agent.config import VARIANT_CONTAINER, VARIANT_HOST, Credentials
from sitecenter_agent.control import StateController
from sitecenter_agent.payload import to_json

logger = logging.getLogger(__name__)

INVALID_SECRET_MARKER = 'Invalid secret!'
MONITOR_INACTIVE_MARKER = 'Monitor is not active!'


class ReportOutcome(Enum):
    SENT = 'sent'
    INVALID_SECRET = 'invalid-secret'
    MONITOR_INACTIVE = 'monitor-inactive'
    HTTP_ERROR = 'http-error'
    TRANSPORT_ERROR = 'transport-error'


def classify_response(status_code: int, body: str) -> ReportOutcome:
    """Map a server reply to an outcome; body markers win over the status code"""
    body = body or ''
    if INVALID_SECRET_MARKER in body:
        return ReportOutcome.INVALID_SECRET
    if MONITOR_INACTIVE_MARKER in body:
        return ReportOutcome.MONITOR_INACTIVE
    if 200 <= status_code < 300:
        return ReportOutcome.SENT
    return ReportOutcome.HTTP_ERROR


class Reporter:
    """Sends stats and heartbeats for one monitor"""

    def __init__(
        self,
        credentials: Credentials,
        controller: StateController,
        base_url: str = 'https://mon.sitecenter.app',
        variant: str = VARIANT_HOST,
        timeout: float = 30.0,
        send_delay_max: float = 40.0,
        pause_seconds: int = 86400,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.credentials = credentials
        self.controller = controller
        self.base_url = base_url.rstrip('/')
        self.variant = variant
        self.timeout = timeout
        self.send_delay_max = send_delay_max
        self.pause_seconds = pause_seconds
        self.sleep = sleep

    @property
    def stats_url(self) -> str:
        endpoint = 'app-stats' if self.variant == VARIANT_CONTAINER else 'host-stats'
        return (
            f'{self.base_url}/api/pub/v1/a/{self.credentials.account}'
            f'/monitor/{self.credentials.monitor}/{endpoint}'
        )

    @property
    def heartbeat_url(self) -> str:
        return (
            f'{self.base_url}/api/pub/v1/a/{self.credentials.account}'
            f'/heartbeat/{self.credentials.monitor}/alive'
        )

    def spread_delay(self) -> float:
        """Sleep a random 0..send_delay_max seconds before posting"""
        if self.send_delay_max <= 0:
            return 0.0
        delay = random.uniform(0, self.send_delay_max)
        logger.debug(f"Delaying {delay:.1f}s before sending")
        self.sleep(delay)
        return delay

    def send_stats(self, payload: Dict[str, Any], delay: bool = True) -> ReportOutcome:
        """POST the payload once and act on the reply"""
        if delay:
            self.spread_delay()

        try:
            response = requests.post(
                self.stats_url,
                data=to_json(payload),
                headers={
                    'Content-Type': 'application/json',
                    'X-Monitor-Secret': self.credentials.secret,
                },
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            logger.warning(f"Stats upload timed out after {self.timeout}s", extra={'context': {'url': self.stats_url}})
            return ReportOutcome.TRANSPORT_ERROR
        except requests.exceptions.RequestException as e:
            logger.warning("Stats upload failed", extra={'context': {'url': self.stats_url, 'error': str(e)}})
            return ReportOutcome.TRANSPORT_ERROR

        outcome = classify_response(response.status_code, response.text)
        self._apply(outcome, response.status_code)
        return outcome

    def _apply(self, outcome: ReportOutcome, status_code: int) -> None:
        if outcome is ReportOutcome.INVALID_SECRET:
            self.controller.mark_stopped("Invalid secret")
        elif outcome is ReportOutcome.MONITOR_INACTIVE:
            self.controller.mark_paused("Monitor is not active", self.pause_seconds)
        elif outcome is ReportOutcome.HTTP_ERROR:
            logger.warning(f"Received HTTP code {status_code}", extra={'context': {'url': self.stats_url}})
        else:
            logger.debug("Stats delivered", extra={'context': {'status_code': status_code}})

    def send_heartbeat(self, alive_code: Optional[str] = None) -> bool:
        """Liveness ping with an empty body; True on a 2xx reply"""
        params = {'aliveCode': alive_code or self.credentials.secret}
        try:
            response = requests.post(
                self.heartbeat_url,
                params=params,
                headers={'Content-Type': 'application/json'},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.warning("Heartbeat failed", extra={'context': {'url': self.heartbeat_url, 'error': str(e)}})
            return False

        if not 200 <= response.status_code < 300:
            logger.warning(f"Heartbeat received HTTP code {response.status_code}")
            return False
        return True
