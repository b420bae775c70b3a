"""Running shell commands on managed instances through AWS Systems Manager.

A command goes through three bounded waits: the instance must accept
commands, the invocation must show up in the command store, and the
invocation must reach a final status. Only InProgress, Delayed and Pending
are non-final; any other status ends the poll, including ones this module
doesn't know about.
"""

import threading
from typing import Any

from pydantic import BaseModel

from cluster_lifecycle.config import LifecycleSettings
from cluster_lifecycle.exceptions import ClusterLifecycleError, CommandFailedError
from cluster_lifecycle.logging_config import get_logger
from cluster_lifecycle.retrier import Retrier, fixed_interval_policy, max_retries_policy

logger = get_logger(__name__)

DOCUMENT_NAME = "AWS-RunShellScript"
EXECUTION_TIMEOUT = "10800"
SUCCESS_STATUS = "Success"
NON_FINAL_STATUSES = frozenset({"InProgress", "Delayed", "Pending"})

READY_COMMAND = "ls"
READY_MAX_RETRIES = 10
READY_BACKOFF = 20.0
REGISTRATION_MAX_RETRIES = 10
REGISTRATION_BACKOFF = 5.0


def is_final_status(status: str) -> bool:
    """Whether an invocation in ``status`` will not change any more."""
    return status not in NON_FINAL_STATUSES


class CommandPendingError(ClusterLifecycleError):
    """Raised by a single status poll that found the command still running."""

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"ssm command still running: status {status}")


class CommandResult(BaseModel):
    """Final state of a command invocation."""

    command_id: str
    instance_id: str
    status: str
    stdout: str = ""
    stderr: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCESS_STATUS


def stderr_s3_url(bucket: str, prefix: str | None, command_id: str, instance_id: str) -> str:
    """Location SSM writes a shell script's stderr to when output goes to S3."""
    base = "/".join(p for p in (bucket, prefix, command_id, instance_id) if p)
    return f"s3://{base}/awsrunShellScript/0.awsrunShellScript/stderr"


class RemoteCommandRunner:
    """Runs commands on instances via an SSM client.

    ``ssm_client`` is a ``boto3.client("ssm")`` or anything with the same
    ``send_command`` and ``get_command_invocation`` methods.
    """

    def __init__(
        self,
        ssm_client: Any,
        settings: LifecycleSettings | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.client = ssm_client
        self.settings = settings or LifecycleSettings()
        self.cancel_event = cancel_event

    def wait_for_ready(self, instance_id: str) -> None:
        """Block until ``instance_id`` runs a trivial command successfully.

        Raises:
            RetryExhaustedError: The instance never accepted the command
        """
        logger.info(f"Waiting for SSM agent on {instance_id} to be ready")
        retrier = Retrier(
            policy=max_retries_policy(READY_MAX_RETRIES, READY_BACKOFF),
            cancel_event=self.cancel_event,
            description=f"ssm on {instance_id} to be ready",
        )
        retrier.retry(lambda: self.run(instance_id, READY_COMMAND))

    def run(
        self,
        instance_id: str,
        command: str,
        output_bucket: str | None = None,
        output_prefix: str | None = None,
    ) -> CommandResult:
        """Run ``command`` on ``instance_id`` and wait for it to finish.

        Args:
            instance_id: Managed instance to run on
            command: Shell command line
            output_bucket: Optional S3 bucket receiving the full command output
            output_prefix: Key prefix inside ``output_bucket``

        Returns:
            The final invocation, with captured stdout and stderr

        Raises:
            CommandFailedError: The command finished with a non-success status
            RetryExhaustedError: Registration or completion never happened in time
        """
        command_id = self._send(instance_id, command, output_bucket, output_prefix)

        registration = Retrier(
            policy=max_retries_policy(REGISTRATION_MAX_RETRIES, REGISTRATION_BACKOFF),
            cancel_event=self.cancel_event,
            description=f"ssm command {command_id} to be registered",
        )
        registration.retry(lambda: self._get_invocation(command_id, instance_id))

        completion = Retrier(
            timeout=self.settings.ssm_timeout,
            policy=fixed_interval_policy(self.settings.ssm_poll_interval),
            cancel_event=self.cancel_event,
            description=f"ssm command {command_id} to finish",
        )
        result = completion.retry(lambda: self._poll_final(command_id, instance_id))
        logger.debug(
            f"Command {command_id} on {instance_id} finished with status {result.status}\n"
            f"stdout: {result.stdout}\nstderr: {result.stderr}"
        )

        if not result.succeeded:
            if output_bucket:
                url = stderr_s3_url(output_bucket, output_prefix, command_id, instance_id)
                logger.error(f"Command {command_id} failed, full stderr available at {url}")
            raise CommandFailedError(result.status, stdout=result.stdout, stderr=result.stderr)

        logger.debug(f"Command {command_id} on {instance_id} succeeded")
        return result

    def _send(
        self,
        instance_id: str,
        command: str,
        output_bucket: str | None,
        output_prefix: str | None,
    ) -> str:
        kwargs = {
            "DocumentName": DOCUMENT_NAME,
            "InstanceIds": [instance_id],
            "Parameters": {"commands": [command], "executionTimeout": [EXECUTION_TIMEOUT]},
        }
        if output_bucket:
            kwargs["OutputS3BucketName"] = output_bucket
            if output_prefix:
                kwargs["OutputS3KeyPrefix"] = output_prefix

        try:
            response = self.client.send_command(**kwargs)
        except Exception as e:
            raise ClusterLifecycleError("error sending ssm command", str(e)) from e

        command_id = response["Command"]["CommandId"]
        logger.debug(f"Sent command {command_id} to {instance_id}")
        return command_id

    def _get_invocation(self, command_id: str, instance_id: str) -> CommandResult:
        response = self.client.get_command_invocation(CommandId=command_id, InstanceId=instance_id)
        return CommandResult(
            command_id=command_id,
            instance_id=instance_id,
            status=response.get("Status", ""),
            stdout=response.get("StandardOutputContent", ""),
            stderr=response.get("StandardErrorContent", ""),
        )

    def _poll_final(self, command_id: str, instance_id: str) -> CommandResult:
        result = self._get_invocation(command_id, instance_id)
        if not is_final_status(result.status):
            raise CommandPendingError(result.status)
        return result
