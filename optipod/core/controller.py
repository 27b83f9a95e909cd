"""
Controller loop for OptiPod.

Dispatches policy reconciliations onto a bounded worker pool. Triggers
come from three places: policy watch events, workload watch events and a
per-policy interval timer run by APScheduler.

Per policy key:
- at most one reconciliation runs at a time,
- a timer trigger that fires while a run is in flight is dropped,
- an event trigger that arrives during a run schedules exactly one rerun,
- a key already waiting in the queue is not queued twice.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytz
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers import SchedulerNotRunningError
from apscheduler.schedulers.background import BackgroundScheduler

from optipod.config import BaseConfig
from optipod.core.cluster import ClusterClient, ClusterError
from optipod.core.discovery import SUPPORTED_KINDS, policy_matches
from optipod.core.reconciler import PolicyReconciler, ReconcileResult
from optipod.core.retry import RetryPolicy
from optipod.core.schemas import OptimizationPolicy, PolicyMode, parse_duration
from optipod.core.validation import PolicyValidationError, policy_from_manifest
from optipod.core.workloads import Workload

logger = logging.getLogger(__name__)

TRIGGER_EVENT = "event"
TRIGGER_TIMER = "timer"
TRIGGER_RETRY = "retry"

WATCH_ERROR_PAUSE_SECONDS = 5


def split_key(key: str) -> tuple[str, str]:
    namespace, _, name = key.partition("/")
    return namespace, name


class Controller:
    """
    Owns the worker pool, timers and watches.

    The reconciler re-reads everything it needs on each run; the small
    policy index kept here only routes workload events to policies.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        reconciler: PolicyReconciler,
        app_config: BaseConfig,
        scheduler: Optional[BackgroundScheduler] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """
        Initialize the controller.

        Args:
            cluster: Cluster API access.
            reconciler: The per-policy pipeline.
            app_config: Application configuration.
            scheduler: Optional scheduler, mainly for tests.
            retry_policy: Backoff for requeueing transiently failed policies.
        """
        self.cluster = cluster
        self.reconciler = reconciler
        self.config = app_config
        self.retry_policy = retry_policy or RetryPolicy.from_config(
            app_config, base_delay=max(app_config.RETRY_BASE_DELAY, 1.0),
            max_delay=max(app_config.RETRY_MAX_DELAY, 60.0),
        )
        self._scheduler = scheduler or BackgroundScheduler(
            timezone=pytz.UTC,
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60,
            },
        )
        self._pool = ThreadPoolExecutor(
            max_workers=max(1, app_config.WORKER_POOL_SIZE),
            thread_name_prefix="optipod-worker",
        )
        self._lock = threading.Lock()
        self._queued: set[str] = set()
        self._running: set[str] = set()
        self._rerun: set[str] = set()
        self._failures: dict[str, int] = {}
        self._policies: dict[str, OptimizationPolicy] = {}
        self._intervals: dict[str, float] = {}
        self._generations: dict[str, tuple] = {}
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._is_running = False

    @property
    def is_running(self) -> bool:
        return self._is_running

    # ------------------------------------------------------------------
    # Work queue
    # ------------------------------------------------------------------

    def enqueue(self, key: str, trigger: str = TRIGGER_EVENT) -> bool:
        """
        Request a reconciliation of a policy.

        Returns:
            True if a run was queued or a rerun was recorded.
        """
        with self._lock:
            if key in self._running:
                if trigger == TRIGGER_TIMER:
                    logger.debug(f"Timer for {key} coalesced, reconciliation still running")
                    return False
                self._rerun.add(key)
                return True
            if key in self._queued:
                return False
            self._queued.add(key)

        self._pool.submit(self._run, key, trigger)
        return True

    def _run(self, key: str, trigger: str) -> Optional[ReconcileResult]:
        with self._lock:
            self._queued.discard(key)
            self._running.add(key)

        result = None
        try:
            namespace, name = split_key(key)
            logger.debug(f"Reconciling {key} (trigger={trigger})")
            result = self.reconciler.reconcile(namespace, name)
            self._after_reconcile(key, result)
        except Exception:
            logger.exception(f"Unexpected error reconciling {key}")
        finally:
            with self._lock:
                self._running.discard(key)
                rerun = key in self._rerun and not self._stop_event.is_set()
                self._rerun.discard(key)
                if rerun:
                    self._queued.add(key)
            if rerun:
                self._pool.submit(self._run, key, TRIGGER_EVENT)
        return result

    def _after_reconcile(self, key: str, result: ReconcileResult) -> None:
        if result.deleted:
            self.forget(key)
            return
        if result.requeue:
            with self._lock:
                failures = self._failures.get(key, 0)
                self._failures[key] = failures + 1
            delay = self.retry_policy.delay_for(failures)
            logger.info(f"Requeueing {key} in {delay:.1f}s after transient failure")
            self._schedule_retry(key, delay)
        else:
            with self._lock:
                self._failures.pop(key, None)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def schedule(self, policy: OptimizationPolicy) -> None:
        """Create or update the interval timer for a policy."""
        try:
            interval = parse_duration(policy.spec.reconciliation_interval).total_seconds()
        except ValueError:
            interval = parse_duration(self.config.DEFAULT_RECONCILIATION_INTERVAL).total_seconds()

        if self._intervals.get(policy.key) == interval:
            return
        self._intervals[policy.key] = interval
        self._scheduler.add_job(
            self.enqueue,
            trigger="interval",
            seconds=interval,
            args=[policy.key, TRIGGER_TIMER],
            id=f"interval:{policy.key}",
            replace_existing=True,
        )
        logger.info(f"Scheduled {policy.key} every {interval:.0f}s")

    def _schedule_retry(self, key: str, delay: float) -> None:
        self._scheduler.add_job(
            self.enqueue,
            trigger="date",
            run_date=datetime.now(timezone.utc) + timedelta(seconds=delay),
            args=[key, TRIGGER_RETRY],
            id=f"retry:{key}",
            replace_existing=True,
        )

    def forget(self, key: str) -> None:
        """Drop timers and routing state for a deleted policy."""
        self._policies.pop(key, None)
        self._intervals.pop(key, None)
        with self._lock:
            self._failures.pop(key, None)
        for job_id in (f"interval:{key}", f"retry:{key}"):
            try:
                self._scheduler.remove_job(job_id)
            except JobLookupError:
                pass

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def handle_policy_event(self, event_type: str, obj: dict) -> None:
        """
        Handle a policy watch event.

        Args:
            event_type: ADDED, MODIFIED or DELETED.
            obj: The policy object from the event.
        """
        metadata = obj.get("metadata") or {}
        key = f"{metadata.get('namespace', 'default')}/{metadata.get('name', '')}"

        if event_type == "DELETED":
            logger.info(f"Policy DELETED: {key}")
            self.forget(key)
            return

        try:
            policy = policy_from_manifest(obj)
        except PolicyValidationError as e:
            logger.warning(f"Policy {key} failed validation: {e.message}")
            self.enqueue(key, TRIGGER_EVENT)
            return

        previous = self._policies.get(key)
        self._policies[key] = policy
        self.schedule(policy)
        if previous is None or previous.generation != policy.generation:
            logger.info(f"Policy {event_type}: {key}")
            self.enqueue(key, TRIGGER_EVENT)

    def handle_workload_event(self, event_type: str, workload: Workload) -> None:
        """Queue every enabled policy whose selector covers a changed workload."""
        fingerprint = (workload.generation, tuple(sorted(workload.labels.items())))
        if event_type == "DELETED":
            self._generations.pop(workload.key, None)
            return
        if self._generations.get(workload.key) == fingerprint:
            return
        self._generations[workload.key] = fingerprint

        for key, policy in list(self._policies.items()):
            if policy.spec.mode == PolicyMode.DISABLED:
                continue
            if policy_matches(policy, workload):
                self.enqueue(key, TRIGGER_EVENT)

    def load_existing_policies(self) -> int:
        """
        Load existing policies and queue an initial reconciliation for each.

        Returns:
            Number of policies loaded.
        """
        logger.info("Loading existing policies...")
        objs = self.cluster.list_policies(self.config.WATCH_NAMESPACE)
        for obj in objs:
            self.handle_policy_event("ADDED", obj)
        logger.info(f"Loaded {len(objs)} existing policies")
        return len(objs)

    def watch_policies(self) -> None:
        """Watch for policy events in a loop."""
        logger.info("Starting policy watcher...")
        while not self._stop_event.is_set():
            try:
                for event in self.cluster.watch_policies(
                    namespace=self.config.WATCH_NAMESPACE,
                    timeout=self.config.WATCH_TIMEOUT_SECONDS,
                ):
                    if self._stop_event.is_set():
                        break
                    self.handle_policy_event(event["type"], event["object"])
            except ClusterError as e:
                logger.error(f"Policy watch error: {e}")
                self._stop_event.wait(WATCH_ERROR_PAUSE_SECONDS)
            except Exception as e:
                logger.error(f"Unexpected error in policy watcher: {e}")
                self._stop_event.wait(WATCH_ERROR_PAUSE_SECONDS)

    def watch_workloads(self, kind) -> None:
        """Watch one workload kind in a loop."""
        logger.info(f"Starting {kind.value} watcher...")
        while not self._stop_event.is_set():
            try:
                for event in self.cluster.watch_workloads(
                    kind, timeout=self.config.WATCH_TIMEOUT_SECONDS
                ):
                    if self._stop_event.is_set():
                        break
                    self.handle_workload_event(event["type"], event["object"])
            except ClusterError as e:
                logger.error(f"{kind.value} watch error: {e}")
                self._stop_event.wait(WATCH_ERROR_PAUSE_SECONDS)
            except Exception as e:
                logger.error(f"Unexpected error in {kind.value} watcher: {e}")
                self._stop_event.wait(WATCH_ERROR_PAUSE_SECONDS)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, watch: bool = True) -> None:
        """Start timers, watches and the initial reconciliation of every policy."""
        if self._is_running:
            logger.warning("Controller is already running")
            return

        logger.info("=" * 60)
        logger.info("Starting OptiPod controller")
        logger.info("=" * 60)
        logger.info(f"Namespace: {self.config.WATCH_NAMESPACE or 'all namespaces'}")
        logger.info(f"Dry run: {self.config.DRY_RUN}")

        self._stop_event.clear()
        self._scheduler.start()
        self.load_existing_policies()

        if watch:
            self._threads = [
                threading.Thread(target=self.watch_policies, name="policy-watcher", daemon=True)
            ]
            for kind in SUPPORTED_KINDS:
                self._threads.append(
                    threading.Thread(
                        target=self.watch_workloads,
                        args=(kind,),
                        name=f"{kind.value.lower()}-watcher",
                        daemon=True,
                    )
                )
            for thread in self._threads:
                thread.start()

        self._is_running = True
        logger.info("Controller started")

    def stop(self, wait: bool = True) -> None:
        """Stop accepting work and shut down."""
        if not self._is_running:
            return
        self._stop_event.set()
        try:
            self._scheduler.shutdown(wait=False)
        except SchedulerNotRunningError:
            logger.debug("Scheduler was not running")
        self._pool.shutdown(wait=wait)
        self._is_running = False
        logger.info("Controller stopped")

    def wait_idle(self, timeout: float = 10.0) -> bool:
        """Block until no reconciliation is queued or running."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._lock:
                if not self._queued and not self._running:
                    return True
            time.sleep(0.01)
        return False
