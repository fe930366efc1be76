"""Hand-off of multi-step workflows to the external executor.

Execution is asynchronous; acceptance of the submission is the only
signal returned.  Completion is reported back through the project state
callback.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from internal.aws.clients import AWS_ERRORS
from internal.config.settings import settings_store
from internal.models.errors import ExternalCallError, TransportError

logger = logging.getLogger(__name__)

CREATE_PROJECT = "create-project"
RUN_WIZARD = "run-wizard"
PREPARE_CUTBACK = "prepare-cutback"
DELETE_PROJECT = "delete-project"


@dataclass(frozen=True)
class SubmissionAck:
    workflow: str
    execution_id: str
    started_at: str = ""


class WorkflowExecutor(ABC):
    @abstractmethod
    def submit(self, workflow: str, payload: dict) -> SubmissionAck:
        ...


class StepFunctionsExecutor(WorkflowExecutor):
    """Starts state machine executions; workflow names resolve to ARNs via settings."""

    def __init__(self, client, settings=settings_store):
        self._client = client
        self._settings = settings

    def submit(self, workflow: str, payload: dict) -> SubmissionAck:
        arn = self._settings.workflow(workflow)
        if not arn:
            raise ExternalCallError(workflow, "no state machine configured")
        try:
            response = self._client.start_execution(stateMachineArn=arn, input=json.dumps(payload))
        except AWS_ERRORS as e:
            logger.error("Starting workflow %s failed: %s", workflow, e)
            raise TransportError(f"Unable to start workflow {workflow}: {e}") from e
        logger.info("Started workflow %s: %s", workflow, response["executionArn"])
        return SubmissionAck(
            workflow=workflow,
            execution_id=response["executionArn"],
            started_at=str(response.get("startDate", "")),
        )
