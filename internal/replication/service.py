"""Replication service client.

The replication SaaS owns machines and their launch blueprints.  Sessions
expire; ``ReauthenticatingService`` wraps the read calls so an expired
session triggers a single login followed by a single retry.
"""

import logging
from abc import ABC, abstractmethod

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

from internal.models.errors import SessionExpiredError, TransportError
from internal.models.types import Machine, ReplicationBlueprint

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


class ReplicationService(ABC):
    @abstractmethod
    def login(self):
        ...

    @abstractmethod
    def list_machines(self, item_id: str) -> list[Machine]:
        ...

    @abstractmethod
    def list_blueprints(self, item_id: str) -> list[ReplicationBlueprint]:
        ...


class CloudEndureClient(ReplicationService):
    """REST client for the replication service API."""

    def __init__(self, api_url: str, api_token: str, timeout: float = 30,
                 session: requests.Session = None):
        self.api_url = api_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers["Content-Type"] = "application/json"

    def _url(self, path: str) -> str:
        return f"{self.api_url}/{path.lstrip('/')}"

    def _parse_error(self, response) -> str:
        try:
            reason = response.json()
        except ValueError:
            reason = "Unable to parse JSON"
        return f"Status: {response.status_code}. Reason: {reason}."

    def _request(self, method: str, path: str, **kwargs):
        url = self._url(path)
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransportError(f"{method.upper()} {url} failed: {e}") from e

        if response.status_code in (401, 419):
            raise SessionExpiredError(f"Session expired calling {url}")
        if response.status_code >= 400:
            raise TransportError(self._parse_error(response))
        if not response.text:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"Unable to parse JSON from {url}") from e

    def _get_all(self, path: str) -> list[dict]:
        items = []
        offset = 0
        while True:
            page = self._request("get", path, params={"offset": offset, "limit": PAGE_SIZE}) or {}
            batch = page.get("items", [])
            items.extend(batch)
            if len(batch) < PAGE_SIZE:
                return items
            offset += len(batch)

    def login(self):
        account = self._request("post", "/login", json={"userApiToken": self.api_token})
        token = self.session.cookies.get("XSRF-TOKEN")
        if token:
            self.session.headers["X-XSRF-TOKEN"] = token
        logger.info("Logged in to replication service %s", self.api_url)
        return account

    def list_machines(self, item_id: str) -> list[Machine]:
        return [Machine.from_api(m) for m in self._get_all(f"/projects/{item_id}/machines")]

    def list_blueprints(self, item_id: str) -> list[ReplicationBlueprint]:
        return [ReplicationBlueprint.from_api(b) for b in self._get_all(f"/projects/{item_id}/blueprints")]


class ReauthenticatingService(ReplicationService):
    """Retries a read once, after logging in again, when the session expired."""

    def __init__(self, service: ReplicationService, attempts: int = 2):
        self._service = service
        self._retrying = Retrying(
            stop=stop_after_attempt(attempts),
            retry=retry_if_exception_type(SessionExpiredError),
            reraise=True,
            before_sleep=self._login_again,
        )

    def _login_again(self, retry_state):
        logger.info("Replication session expired (attempt %d), logging in again",
                    retry_state.attempt_number)
        self._service.login()

    def login(self):
        return self._service.login()

    def list_machines(self, item_id: str) -> list[Machine]:
        return self._retrying.copy()(self._service.list_machines, item_id)

    def list_blueprints(self, item_id: str) -> list[ReplicationBlueprint]:
        return self._retrying.copy()(self._service.list_blueprints, item_id)
