"""Credential persistence in AWS Secrets Manager.

Project credentials are stored under ``<prefix>/<secret id>``. Credentials
saved for a wizard run are temporary: they carry a tag naming the owning
project so they can be released together with it.
"""

import json
import logging
import uuid
from typing import Optional

from internal.aws.clients import AWS_ERRORS, error_code, paginate
from internal.models.errors import NotFoundError, TransportError
from internal.models.types import Credential

logger = logging.getLogger(__name__)

TEMP_TAG = "drp:temporary"


class SecretManager:
    def __init__(self, client, prefix: str = "drp"):
        self._client = client
        self.prefix = prefix

    def _name(self, secret_id: str) -> str:
        return f"{self.prefix}/{secret_id}"

    def save_secret(self, credential: Credential, secret_id: Optional[str] = None,
                    project_id: Optional[str] = None, temporary: bool = False) -> str:
        """Store a credential and return its secret id (generated when not given)."""
        secret_id = secret_id or uuid.uuid4().hex
        secret = json.dumps(credential.to_dict())
        kwargs = {"Name": self._name(secret_id), "SecretString": secret}
        if temporary:
            kwargs["Tags"] = [{"Key": TEMP_TAG, "Value": project_id or ""}]
        try:
            self._client.create_secret(**kwargs)
        except AWS_ERRORS as e:
            if error_code(e) != "ResourceExistsException":
                raise TransportError(f"Unable to save secret {secret_id}: {e}") from e
            try:
                self._client.put_secret_value(SecretId=self._name(secret_id), SecretString=secret)
            except AWS_ERRORS as put_error:
                raise TransportError(f"Unable to update secret {secret_id}: {put_error}") from put_error
        logger.info("Saved %s secret %s", "temporary" if temporary else "project", secret_id)
        return secret_id

    def get_credential(self, secret_id: str) -> Credential:
        try:
            response = self._client.get_secret_value(SecretId=self._name(secret_id))
        except AWS_ERRORS as e:
            if error_code(e) == "ResourceNotFoundException":
                raise NotFoundError(f"Secret {secret_id} not found") from e
            raise TransportError(f"Unable to read secret {secret_id}: {e}") from e
        return Credential.from_dict(json.loads(response["SecretString"]))

    def delete_secret(self, secret_id: str) -> bool:
        try:
            self._client.delete_secret(SecretId=self._name(secret_id), ForceDeleteWithoutRecovery=True)
        except AWS_ERRORS as e:
            if error_code(e) == "ResourceNotFoundException":
                logger.info("Secret %s already gone", secret_id)
                return False
            raise TransportError(f"Unable to delete secret {secret_id}: {e}") from e
        logger.info("Deleted secret %s", secret_id)
        return True

    def delete_temp_secrets(self, project_id: str) -> int:
        """Delete every temporary secret saved for the project."""
        secrets = paginate(
            self._client, "list_secrets", "SecretList",
            Filters=[
                {"Key": "tag-key", "Values": [TEMP_TAG]},
                {"Key": "tag-value", "Values": [project_id]},
            ],
        )
        for secret in secrets:
            try:
                self._client.delete_secret(SecretId=secret["ARN"], ForceDeleteWithoutRecovery=True)
            except AWS_ERRORS as e:
                raise TransportError(f"Unable to delete secret {secret['Name']}: {e}") from e
        if secrets:
            logger.info("Deleted %d temporary secrets of project %s", len(secrets), project_id)
        return len(secrets)
