from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from core.cancellation import CancellationToken
from core.config import BrokerConfig, get_config
from core.errors import BadRequestError, OperationCancelledError
from core.progress import as_reporter
from core.time_utils import utc_now
from core.utils import slugify
from infra.ssh_executor import ShellCommandOptions
from services.training.models import TrainingJob, TrainingJobInput, TrainingTask

logger = logging.getLogger("TrainingOrchestrator")

TOOL_NAME = "train_classifier"


def render_command(template: str, subclass: str, dataset_path: str) -> str:
    return (
        template.replace("{{subclass}}", subclass)
        .replace("{{dataset_path}}", dataset_path)
        .replace("{{datasetPath}}", dataset_path)
        .replace("{{subclass_slug}}", slugify(subclass))
    )


class TrainingOrchestrator:
    """Runs one shell command per subclass, strictly in input order.

    A task failure never stops the remaining tasks; only the job-level
    cancellation token does, and then every task not yet started is marked
    cancelled without touching the executor.
    """

    def __init__(
        self,
        executor: Any,
        *,
        config_provider: Callable[[], BrokerConfig] = get_config,
    ) -> None:
        self.executor = executor
        self._config_provider = config_provider

    async def run(
        self,
        job_input: TrainingJobInput,
        *,
        cancellation: Optional[CancellationToken] = None,
        progress: Any = None,
        request_id: Optional[str] = None,
    ) -> TrainingJob:
        settings = self._config_provider().training
        template = job_input.command_template or settings.default_command_template
        if not template:
            raise BadRequestError("No command template supplied for training job")
        timeout_ms = job_input.timeout_ms or settings.default_timeout_ms

        job = TrainingJob(
            profile=job_input.profile,
            dataset_path=job_input.dataset_path,
            command_template=template,
            tasks=[
                TrainingTask(
                    subclass=subclass,
                    command=render_command(template, subclass, job_input.dataset_path),
                    dry_run=job_input.dry_run,
                )
                for subclass in job_input.subclasses
            ],
        )
        reporter = as_reporter(progress, source="training")
        total = len(job.tasks)
        logger.info(
            "Training job started job_id=%s profile=%s tasks=%s dry_run=%s request_id=%s",
            job.job_id,
            job.profile,
            total,
            job_input.dry_run,
            request_id,
        )

        for index, task in enumerate(job.tasks):
            if cancellation is not None and cancellation.cancelled:
                task.finish("cancelled", "warn", "Skipped: job cancelled before this task started")
                continue
            reporter.report(index / total, f"Training {task.subclass} ({index + 1}/{total})")

            if task.dry_run:
                task.started_at = utc_now()
                task.finish("succeeded", "info", f"Dry run: would execute `{task.command}`")
                continue

            await self._run_task(
                job,
                task,
                timeout_ms=timeout_ms,
                cancellation=cancellation,
                progress=reporter.scaled(index / total, (index + 1) / total),
                request_id=request_id,
            )

        job.status = job.aggregate_status()
        job.completed_at = utc_now()
        reporter.report(1.0, f"Training job {job.status}")
        logger.info("Training job finished job_id=%s status=%s", job.job_id, job.status)
        return job

    async def _run_task(
        self,
        job: TrainingJob,
        task: TrainingTask,
        *,
        timeout_ms: int,
        cancellation: Optional[CancellationToken],
        progress: Any,
        request_id: Optional[str],
    ) -> None:
        task.status = "running"
        task.started_at = utc_now()
        task.log("info", f"Executing `{task.command}` on profile {job.profile}")
        try:
            result = await self.executor.execute(
                job.profile,
                task.command,
                ShellCommandOptions(timeout_ms=timeout_ms, request_id=request_id, tool=TOOL_NAME),
                cancellation=cancellation,
                progress=progress,
            )
        except OperationCancelledError as exc:
            task.error = exc.message
            task.finish("cancelled", "warn", f"Cancelled: {exc.message}")
            logger.info("Training task cancelled job_id=%s subclass=%s", job.job_id, task.subclass)
            return
        except Exception as exc:  # noqa: BLE001
            task.error = str(exc) or exc.__class__.__name__
            task.finish("failed", "error", f"Failed: {task.error}")
            logger.warning(
                "Training task failed job_id=%s subclass=%s error=%s", job.job_id, task.subclass, task.error
            )
            return

        task.result = result.to_dict()
        if result.exit_code == 0:
            task.finish("succeeded", "info", f"Command completed in {result.duration_ms} ms")
            return
        task.error = (
            f"exited with status {result.exit_code}"
            if result.exit_code is not None
            else "exited without a status"
        )
        task.finish("failed", "error", f"Command {task.error}")
        logger.warning(
            "Training task failed job_id=%s subclass=%s exit_code=%s",
            job.job_id,
            task.subclass,
            result.exit_code,
        )
