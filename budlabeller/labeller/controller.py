#  -----------------------------------------------------------------------------
#  Copyright (c) 2024 Bud Ecosystem Inc.
#  #
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#  #
#      http://www.apache.org/licenses/LICENSE-2.0
#  #
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#  -----------------------------------------------------------------------------

"""Reconcile loop keeping the labeller labels of a node converged with its capabilities."""

import random
import time
from threading import Event, Thread
from typing import List, Optional, Protocol

from kubernetes import client

from ..capabilities.manager import NodeCapabilitiesManager
from ..capabilities.realtime import RealtimeProbe
from ..commons.config import AppConfig, app_settings
from ..commons.constants import LABELLER_SKIP_NODE_ANNOTATION
from ..commons.observability import (
    ADVISORIES_TOTAL,
    RECONCILE_DURATION,
    RECONCILE_TOTAL,
    configure_structlog,
    get_logger,
)
from .cluster_config import ClusterConfig
from .labels import MANAGED_LABEL_DOMAIN, LabelPlan, ManagedLabelDomain, build_labels
from .node_client import KubernetesEventRecorder, KubernetesNodeClient, NodeSnapshot, load_kube_client
from .workqueue import RateLimitingQueue, default_controller_rate_limiter


logger = get_logger(__name__)

WORKER_RESTART_PERIOD = 1.0


class NodeClient(Protocol):
    """Read and conditional write access to a node."""

    def get(self, name: str) -> NodeSnapshot:
        """Fetch the node."""

    def compare_and_swap_labels(self, name: str, expected: dict, desired: dict) -> None:
        """Replace the labels if they still equal `expected`."""


class EventRecorder(Protocol):
    """Advisory event sink."""

    def warning(self, node: NodeSnapshot, reason: str, message: str) -> None:
        """Record a warning against the node."""


def skip_node_labelling(node: NodeSnapshot) -> bool:
    """Whether the node opted out of labelling through its annotations."""
    return LABELLER_SKIP_NODE_ANNOTATION in node.annotations


class NodeLabeller:
    """Drives label reconciliation for the local node.

    Triggers (the jittered timer and cluster configuration changes) only enqueue
    the node name. Workers drain the queue; since the queue never hands out a key
    that is already being processed, at most one cycle runs at a time.
    """

    def __init__(
        self,
        cluster_config: ClusterConfig,
        node_client: NodeClient,
        host: str,
        recorder: EventRecorder,
        capabilities_manager: NodeCapabilitiesManager,
        realtime_probe: RealtimeProbe,
        queue: Optional[RateLimitingQueue] = None,
        interval: float = 180.0,
        jitter: float = 1.2,
        managed_domain: ManagedLabelDomain = MANAGED_LABEL_DOMAIN,
    ):
        """Initialize the labeller for the node named `host`."""
        self.cluster_config = cluster_config
        self.node_client = node_client
        self.host = host
        self.recorder = recorder
        self.capabilities_manager = capabilities_manager
        self.realtime_probe = realtime_probe
        self.queue = queue or RateLimitingQueue(name="virt-handler-node-labeller")
        self.interval = interval
        self.jitter = jitter
        self.managed_domain = managed_domain
        self._tsc_reported = False

    def enqueue(self) -> None:
        """Schedule a reconcile cycle for the node."""
        self.queue.add(self.host)

    def run(self, threadiness: int, stop: Event) -> None:
        """Run the triggers and `threadiness` workers until `stop` is set.

        Returns once every worker has finished its in-flight cycle.
        """
        logger.info("node-labeller is running", node=self.host, threadiness=threadiness)

        self.cluster_config.set_config_modified_callback(self.enqueue)

        threads: List[Thread] = [
            Thread(target=self._periodic_trigger, args=(stop,), name="node-labeller-timer", daemon=True)
        ]
        threads.extend(
            Thread(target=self._worker_until, args=(stop,), name=f"node-labeller-worker-{index}", daemon=True)
            for index in range(threadiness)
        )
        for thread in threads:
            thread.start()

        try:
            stop.wait()
        finally:
            stop.set()
            self.queue.shut_down()
            for thread in threads:
                thread.join()
            logger.info("node-labeller stopped", node=self.host)

    def _jittered_interval(self) -> float:
        if self.jitter <= 0:
            return self.interval
        return self.interval + random.random() * self.jitter * self.interval

    def _periodic_trigger(self, stop: Event) -> None:
        while not stop.is_set():
            self.enqueue()
            if stop.wait(self._jittered_interval()):
                break

    def _worker_until(self, stop: Event) -> None:
        while not stop.is_set():
            self.run_worker()
            stop.wait(WORKER_RESTART_PERIOD)

    def run_worker(self) -> None:
        """Process keys until the queue shuts down."""
        while self.process_next_item():
            pass

    def process_next_item(self) -> bool:
        """Run one cycle for the next key.

        Returns:
            False once the queue is shut down, True otherwise.
        """
        key, shutdown = self.queue.get()
        if shutdown:
            return False

        try:
            self.reconcile(key)
        except Exception as err:
            logger.error(
                "node-labeller sync error encountered",
                node=key,
                error=str(err),
                requeues=self.queue.num_requeues(key),
            )
            self.queue.add_rate_limited(key)
        else:
            self.queue.forget(key)
        finally:
            self.queue.done(key)
        return True

    def prepare_labels(self) -> LabelPlan:
        """Reload the capabilities and compute the desired labeller labels.

        Raises:
            ParseError: If a capability descriptor cannot be parsed.
            DeriveError: If the capabilities cannot be derived.
        """
        derived = self.capabilities_manager.load()
        if not derived.has_tsc_counter and not self._tsc_reported:
            logger.error("failed to get tsc cpu frequency, will continue without the tsc frequency label")
            self._tsc_reported = True

        return build_labels(
            derived,
            self.cluster_config.get_obsolete_cpu_models(),
            self.realtime_probe.is_capable(),
        )

    def reconcile(self, name: Optional[str] = None) -> None:
        """Converge the labeller labels of the node once.

        Advisories are recorded as soon as the labels are computed, before the
        compare-and-swap. A cycle that loses to a concurrent writer is retried
        and records its advisories again on the retry, as the upstream node
        labeller does.

        Raises:
            ResourceFetchError: If the node cannot be read.
            ResourceWriteError: If the labels cannot be written, including conflicts.
            ParseError: If a capability descriptor cannot be parsed.
            DeriveError: If the capabilities cannot be derived.
        """
        name = name or self.host
        started = time.perf_counter()
        result = "error"
        try:
            original = self.node_client.get(name)
            labels = dict(original.labels)

            if skip_node_labelling(original):
                logger.debug("Skipping labelling of annotated node", node=name)
                result = "skipped"
            else:
                plan = self.prepare_labels()
                labels = self.managed_domain.replace(original.labels, plan.labels)
                for advisory in plan.advisories:
                    logger.warning(advisory.message, node=name, reason=advisory.reason)
                    self.recorder.warning(original, advisory.reason, advisory.message)
                    ADVISORIES_TOTAL.labels(advisory.reason).inc()
                result = "converged"

            if labels != original.labels:
                self.node_client.compare_and_swap_labels(name, original.labels, labels)
                result = "patched"
        finally:
            RECONCILE_TOTAL.labels(result).inc()
            RECONCILE_DURATION.observe(time.perf_counter() - started)


def build_node_labeller(
    settings: AppConfig = app_settings,
    core_api: Optional[client.CoreV1Api] = None,
    cluster_config: Optional[ClusterConfig] = None,
) -> NodeLabeller:
    """Configure logging and wire a labeller for the local node from the settings."""
    configure_structlog(debug=settings.debug, log_level=settings.log_level, node_name=settings.node_name)

    if core_api is None:
        core_api = client.CoreV1Api(load_kube_client(settings.kubeconfig))
    if cluster_config is None:
        cluster_config = ClusterConfig(settings.obsolete_cpu_models_map())

    queue = RateLimitingQueue(
        rate_limiter=default_controller_rate_limiter(
            base_delay=settings.queue_base_delay_seconds,
            max_delay=settings.queue_max_delay_seconds,
            qps=settings.queue_qps,
            burst=settings.queue_burst,
        ),
        name="virt-handler-node-labeller",
    )

    return NodeLabeller(
        cluster_config=cluster_config,
        node_client=KubernetesNodeClient(core_api),
        host=settings.node_name,
        recorder=KubernetesEventRecorder(core_api, namespace=settings.event_namespace),
        capabilities_manager=NodeCapabilitiesManager(settings.capabilities_volume_path, settings.arch),
        realtime_probe=RealtimeProbe(timeout=settings.realtime_probe_timeout),
        queue=queue,
        interval=settings.labeller_interval_seconds,
        jitter=settings.labeller_jitter_factor,
    )
