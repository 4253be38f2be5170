# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Pipeline controller: turns trigger events into sequential stage executions.

Runs for the same deployment target are serialised through a FIFO queue
consumed by one worker thread per target. A trigger that arrives while a run
is in flight is queued behind it; it never cancels it.
"""
import logging
import queue
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from concurrent.futures import wait as wait_futures
from typing import Dict, Mapping, Optional, Sequence

from ..BUILDERS.image_builder import ImageBuilder
from ..errors import CancellationRejectedError, StackshipError, StageTimeoutError
from ..MODELS.pipeline_run import PipelineRun, RunStatus, Stage, StageName, StageStatus, utcnow
from ..REGISTRY.registry_client import DockerRegistry, RegistryAuth
from ..REMOTE.session import SSHCredentials, SSHExecutor
from ..settings import SECRET_REGISTRY_PASSWORD, SECRET_REGISTRY_USERNAME, SECRET_SSH_KEY, Settings
from .history import PipelineHistory
from .stages import (
    BuildStage, CheckoutStage, DeployStage, GitSource, PipelineStage, PublishStage, RunContext,
)
from .trigger import TriggerEvent

logger = logging.getLogger(__name__)


class PipelineController:
    """
    Executes Checkout -> Build -> Publish -> Deploy for each triggered run.

    The first failing stage fails the run; later stages stay pending and never
    execute. Nothing is retried automatically.
    """

    def __init__(self,
                 stages: Sequence[PipelineStage],
                 work_dir: str,
                 history: Optional[PipelineHistory] = None,
                 stage_timeout: Optional[float] = None,
                 stage_timeouts: Optional[Mapping[StageName, float]] = None):
        """
        Initializes the controller.

        :param stages: Stage implementations, executed in the given order.
        :param work_dir: Source working copy shared by the stages.
        :param history: Run history; an in-memory one is created when omitted.
        :param stage_timeout: Default timeout in seconds for every stage.
        :param stage_timeouts: Per-stage overrides of ``stage_timeout``.
        """
        self.stages = list(stages)
        self.work_dir = work_dir
        self.history = history or PipelineHistory()
        self.stage_timeout = stage_timeout
        self.stage_timeouts = dict(stage_timeouts or {})

        self._lock = threading.Lock()
        self._queues: Dict[str, queue.Queue] = {}
        self._workers: Dict[str, threading.Thread] = {}
        self._finished: Dict[str, threading.Event] = {}
        # run id -> stage thread still running after its timeout
        self._stragglers: Dict[str, Future] = {}

    # Public interface

    def trigger(self, event: TriggerEvent) -> PipelineRun:
        """
        Queues a run for ``event`` and returns it immediately in state pending.
        """
        run = PipelineRun(trigger_ref=event.ref, target=event.target)
        with self._lock:
            self._finished[run.id] = threading.Event()
            self.history.add(run)
            target_queue = self._queue_for(event.target)
        logger.info("Queued run %s for %s (%s, from %s)", run.id, event.ref, event.target, event.source)
        target_queue.put(run.id)
        return run

    def run_sync(self, event: TriggerEvent, timeout: Optional[float] = None) -> PipelineRun:
        """
        Triggers a run and blocks until it reaches a terminal status.
        """
        run = self.trigger(event)
        self.wait(run.id, timeout=timeout)
        return run

    def wait(self, run_id: str, timeout: Optional[float] = None) -> bool:
        """
        Blocks until the run is finished.

        :return: False if ``timeout`` elapsed first.
        """
        with self._lock:
            event = self._finished.get(run_id)
        if event is None:
            raise KeyError(run_id)
        return event.wait(timeout)

    def cancel(self, run_id: str) -> PipelineRun:
        """
        Cancels a run between stages.

        A queued run is cancelled immediately. A running run stops before its next
        stage starts; the stage in progress always completes.

        :raises CancellationRejectedError: If the run is finished or its Deploy
            stage has already started.
        """
        with self._lock:
            run = self.history.get(run_id)
            if run is None:
                raise KeyError(run_id)
            if run.status.is_terminal:
                raise CancellationRejectedError(f"Run {run_id} already finished ({run.status.value})")
            if run.has_started(StageName.DEPLOY):
                raise CancellationRejectedError(f"Run {run_id} is deploying and can no longer be cancelled")

            run.cancel_requested = True
            dequeued = run.status == RunStatus.PENDING
            if dequeued:
                run.status = RunStatus.CANCELLED
                run.error = "cancelled before start"
                run.finished_at = utcnow()
        logger.info("Cancellation requested for run %s", run_id)
        if dequeued:
            self._finish(run)
        return run

    def shutdown(self, wait: bool = True) -> None:
        """
        Stops the workers once their queues drain.
        """
        with self._lock:
            queues = list(self._queues.values())
            workers = list(self._workers.values())
        for target_queue in queues:
            target_queue.put(None)
        if wait:
            for worker in workers:
                worker.join()

    # Workers

    def _queue_for(self, target: str) -> queue.Queue:
        target_queue = self._queues.get(target)
        if target_queue is None:
            target_queue = queue.Queue()
            worker = threading.Thread(target=self._worker, args=(target_queue,),
                                      name=f"pipeline-{target}", daemon=True)
            self._queues[target] = target_queue
            self._workers[target] = worker
            worker.start()
        return target_queue

    def _worker(self, target_queue: queue.Queue) -> None:
        while True:
            run_id = target_queue.get()
            try:
                if run_id is None:
                    return
                run = self.history.get(run_id)
                if run is not None and run.status == RunStatus.PENDING:
                    self.execute(run)
            finally:
                target_queue.task_done()

    # Execution

    def execute(self, run: PipelineRun) -> PipelineRun:
        """
        Executes the stages of ``run`` in the calling thread.
        """
        with self._lock:
            if run.status != RunStatus.PENDING:
                return run
            run.status = RunStatus.RUNNING
            run.started_at = utcnow()
        logger.info("Run %s started for %s", run.id, run.trigger_ref)

        ctx = RunContext(run=run, work_dir=self.work_dir)
        try:
            self._execute_stages(run, ctx)
        except Exception as e:
            logger.exception("Run %s aborted by an unexpected error", run.id)
            stage = run.current_stage
            if stage is not None:
                stage.status = StageStatus.FAILED
                stage.error = str(e)
            run.status = RunStatus.FAILED
            run.error = f"unexpected error: {e}"
        finally:
            run.finished_at = utcnow()
            self._finish(run)
        logger.info("Run %s %s", run.id, run.status.value)
        self._await_straggler(run)
        return run

    def _await_straggler(self, run: PipelineRun) -> None:
        # the next run for this target must not overlap a stage that is still working
        with self._lock:
            straggler = self._stragglers.pop(run.id, None)
        if straggler is None:
            return
        logger.warning("Run %s timed out; waiting for its stage to stop before the next run", run.id)
        wait_futures([straggler])
        error = straggler.exception()
        if error is not None:
            logger.info("Timed-out stage of run %s ended with: %s", run.id, error)

    def _execute_stages(self, run: PipelineRun, ctx: RunContext) -> None:
        for impl in self.stages:
            stage = run.stage(impl.name)
            with self._lock:
                if run.cancel_requested:
                    run.status = RunStatus.CANCELLED
                    run.error = f"cancelled before {impl.name.value}"
                    logger.info("Run %s cancelled before %s", run.id, impl.name.value)
                    return
                stage.status = StageStatus.RUNNING
                stage.started_at = utcnow()

            try:
                self._run_stage(impl, ctx, stage)
            except StackshipError as e:
                stage.status = StageStatus.FAILED
                stage.error = str(e)
                impl.log(stage, f"{impl.name.value} failed: {e}")
                run.status = RunStatus.FAILED
                run.error = f"{impl.name.value}: {e}"
                return
            finally:
                stage.finished_at = utcnow()
            stage.status = StageStatus.SUCCEEDED

        run.status = RunStatus.SUCCEEDED

    def timeout_for(self, name: StageName) -> Optional[float]:
        return self.stage_timeouts.get(name, self.stage_timeout)

    def _run_stage(self, impl: PipelineStage, ctx: RunContext, stage: Stage) -> None:
        timeout = self.timeout_for(impl.name)
        if not timeout:
            impl.execute(ctx, stage)
            return

        # A timed-out stage thread cannot be killed: the run fails now and the
        # worker waits for the thread in _await_straggler.
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"stage-{impl.name.value}")
        future = pool.submit(impl.execute, ctx, stage)
        try:
            future.result(timeout=timeout)
        except FutureTimeoutError as e:
            with self._lock:
                self._stragglers[ctx.run.id] = future
            raise StageTimeoutError(impl.name.value, timeout) from e
        finally:
            pool.shutdown(wait=False)

    def _finish(self, run: PipelineRun) -> None:
        try:
            self.history.record_finished(run)
        except OSError as e:
            logger.error("Cannot write run %s to history: %s", run.id, e)
        with self._lock:
            event = self._finished.get(run.id)
        if event:
            event.set()


def build_controller(settings: Settings, secrets: Optional[Mapping[str, str]] = None) -> PipelineController:
    """
    Wires the default stages (git, Docker engine, registry, SSH) from settings.

    :param secrets: Opaque secret mapping, see ``stackship.settings.load_secrets``.
    """
    secrets = secrets or {}
    if not settings.repo_url:
        raise StackshipError("STACKSHIP_REPO_URL is not set")

    auth = RegistryAuth(secrets.get(SECRET_REGISTRY_USERNAME), secrets.get(SECRET_REGISTRY_PASSWORD))
    credentials = SSHCredentials(user=settings.deploy_user, port=settings.deploy_port,
                                 key_path=secrets.get(SECRET_SSH_KEY))
    timeout = settings.stage_timeout
    # the stage timeout also bounds the commands a stage runs
    git_options = {"timeout": timeout} if timeout else {}
    git = GitSource(settings.repo_url, settings.work_dir, **git_options)
    stages = [
        CheckoutStage(git, settings.topology_file, project=settings.project),
        BuildStage(ImageBuilder(base_dir=settings.work_dir, timeout=timeout)),
        PublishStage(DockerRegistry(auth=auth), registry_host=settings.registry),
        DeployStage(SSHExecutor(), settings.deploy_host, credentials, settings.remote_topology,
                    pre_commands=settings.remote_pre_commands, command=settings.remote_command,
                    project=settings.project, timeout=timeout),
    ]
    return PipelineController(stages, settings.work_dir,
                              history=PipelineHistory(settings.history_file),
                              stage_timeout=settings.stage_timeout)
