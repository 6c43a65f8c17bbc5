"""Push gateways: the transport that gets a notification onto riders' devices.

Token registration and the device delivery itself belong to an external push
service. The engine only calls ``send(recipient_user_ids, message)``.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import requests

from ridematch.config.environment import EnvironmentConfig
from ridematch.config.models import PushConfig
from ridematch.logging import get_logger

from .models import PushDeliveryError, PushMessage

logger = get_logger(__name__, component="push")


class PushGateway(ABC):
    """Interface of the push transport."""

    @abstractmethod
    def send(self, recipient_user_ids: Sequence[str], message: PushMessage) -> None:
        """Push one message to several users.

        Raises:
            PushDeliveryError: If the transport rejects or fails the send
        """


class LogOnlyPushGateway(PushGateway):
    """Gateway used when no push endpoint is configured: logs and drops."""

    def send(self, recipient_user_ids: Sequence[str], message: PushMessage) -> None:
        logger.info(
            f"Push skipped (no endpoint configured): {message.title}",
            extra={
                "event": "push.skipped",
                "recipients": list(recipient_user_ids),
                "priority": message.priority,
            },
        )


class HTTPPushGateway(PushGateway):
    """POSTs messages as JSON to an HTTP push service.

    Request body::

        {"user_ids": [...], "title": "...", "body": "...", "data": {...}, "priority": "high"}
    """

    def __init__(
        self,
        endpoint_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10,
        user_agent: str = "RideMatch/1.0",
        session: Optional[requests.Session] = None,
    ):
        """Initialize the gateway.

        Args:
            endpoint_url: URL of the push service
            api_key: Bearer token, if the service needs one
            timeout: Seconds before a push request is abandoned
            user_agent: User-Agent header
            session: Preconfigured requests session (tests)
        """
        self.endpoint_url = endpoint_url
        self.timeout = timeout

        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": user_agent})
        if api_key:
            self._session.headers.update({"Authorization": f"Bearer {api_key}"})

    def send(self, recipient_user_ids: Sequence[str], message: PushMessage) -> None:
        payload = {
            "user_ids": list(recipient_user_ids),
            "title": message.title,
            "body": message.body,
            "data": message.data,
            "priority": message.priority,
        }

        try:
            response = self._session.post(self.endpoint_url, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise PushDeliveryError(
                f"Push request to {self.endpoint_url} timed out after {self.timeout} seconds"
            ) from e
        except requests.exceptions.RequestException as e:
            raise PushDeliveryError(f"Push request to {self.endpoint_url} failed: {e}") from e

        if response.status_code >= 400:
            # Client errors will not succeed on retry
            retryable = response.status_code >= 500 or response.status_code == 429
            log_level = logging.WARNING if retryable else logging.ERROR
            logger.log(
                log_level,
                f"HTTP {response.status_code} from push endpoint",
                extra={
                    "event": "push.http_error",
                    "status_code": response.status_code,
                    "retryable": retryable,
                },
            )
            raise PushDeliveryError(
                f"HTTP {response.status_code}: {response.reason}",
                status_code=response.status_code,
                retryable=retryable,
            )

        logger.debug(
            "Push accepted",
            extra={"event": "push.accepted", "recipients": len(payload["user_ids"])},
        )


def build_push_gateway(env_config: EnvironmentConfig, push_config: PushConfig) -> PushGateway:
    """HTTP gateway when PUSH_ENDPOINT_URL is set, log-only otherwise."""
    if env_config.push_endpoint_url:
        return HTTPPushGateway(
            endpoint_url=env_config.push_endpoint_url,
            api_key=env_config.push_api_key,
            timeout=push_config.timeout_seconds,
            user_agent=push_config.user_agent,
        )
    return LogOnlyPushGateway()


__all__: List[str] = [
    "PushGateway",
    "HTTPPushGateway",
    "LogOnlyPushGateway",
    "build_push_gateway",
]
