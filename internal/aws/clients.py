"""boto3 plumbing shared by the network, compute, secret and workflow collaborators."""

import json
import logging
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from internal.models.errors import ExternalCallError, TransportError
from internal.models.types import Credential

logger = logging.getLogger(__name__)

AWS_ERRORS = (ClientError, BotoCoreError)


class ClientFactory:
    """Builds boto3 clients for a region, optionally under a project credential.

    Without a credential the control plane's own credential chain is used.
    """

    def __init__(self, session_factory=boto3.Session):
        self._session_factory = session_factory

    def client(self, service: str, region: str, credential: Optional[Credential] = None):
        kwargs = credential.to_boto() if credential else {}
        session = self._session_factory(region_name=region, **kwargs)
        return session.client(service)


def error_code(error: Exception) -> str:
    response = getattr(error, "response", None) or {}
    return response.get("Error", {}).get("Code", "")


def paginate(client, operation: str, key: str, **kwargs) -> list:
    """Drain every page of a paginated listing and return the concatenated items.

    Pages are followed for as long as the service returns a continuation
    token; no caller ever sees a partial listing.
    """
    items = []
    try:
        for page in client.get_paginator(operation).paginate(**kwargs):
            items.extend(page.get(key, []))
    except AWS_ERRORS as e:
        raise TransportError(f"{operation} failed: {e}") from e
    return items


class FunctionInvoker:
    """Invokes external provisioning functions by logical name.

    The reply is parsed as JSON. A reply carrying an ``errorMessage`` field,
    or one that cannot be parsed, is an ExternalCallError. Invocations are
    never retried.
    """

    def __init__(self, client):
        self._client = client

    def invoke(self, function: str, payload: dict):
        try:
            response = self._client.invoke(
                FunctionName=function,
                Payload=json.dumps(payload).encode("utf-8"),
            )
            output = response["Payload"].read().decode("utf-8")
        except AWS_ERRORS as e:
            logger.error("Invoking %s failed: %s", function, e)
            raise TransportError(f"Unable to invoke {function}: {e}") from e

        logger.debug("%s %s: %s", function, response.get("StatusCode"), output)
        try:
            result = json.loads(output) if output else None
        except ValueError as e:
            raise ExternalCallError(function, f"unparseable reply {output[:200]!r}") from e

        if isinstance(result, dict) and result.get("errorMessage") is not None:
            logger.error("%s returned an error: %s", function, result["errorMessage"])
            raise ExternalCallError(function, str(result["errorMessage"]))
        return result
