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

"""Kubernetes boundary of the labeller: node reads, conditional label writes and events."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import urllib3.exceptions
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from ..commons.constants import JSON_PATCH_LABELS_PATH
from ..commons.exceptions import (
    KubernetesException,
    ResourceConflictError,
    ResourceFetchError,
    ResourceWriteError,
)
from ..commons.observability import get_logger


logger = get_logger(__name__)

# Status codes returned when the JSON patch test operation fails or the object changed
CONFLICT_STATUS_CODES = {409, 422}


@dataclass(frozen=True)
class NodeSnapshot:
    """Labels and annotations of a node at the time it was read."""

    name: str
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    uid: str = ""

    @classmethod
    def from_node(cls, node: Any) -> "NodeSnapshot":
        """Build a snapshot from a Kubernetes V1Node object."""
        metadata = node.metadata
        return cls(
            name=metadata.name,
            labels=dict(metadata.labels or {}),
            annotations=dict(metadata.annotations or {}),
            uid=metadata.uid or "",
        )


def build_labels_patch(expected: Mapping[str, str], desired: Mapping[str, str]) -> List[Dict[str, Any]]:
    """Build a JSON patch replacing the node labels only if they still equal `expected`.

    A node without labels has no `metadata.labels` field, so a `test` against `{}`
    would always fail with 422. In that case the labels are created with a single
    unguarded `add`.
    """
    if not expected:
        return [{"op": "add", "path": JSON_PATCH_LABELS_PATH, "value": dict(desired)}]
    return [
        {"op": "test", "path": JSON_PATCH_LABELS_PATH, "value": dict(expected)},
        {"op": "replace", "path": JSON_PATCH_LABELS_PATH, "value": dict(desired)},
    ]


def load_kube_client(kubeconfig: Optional[str] = None) -> client.ApiClient:
    """Create an API client from a kubeconfig file, or from the in-cluster service account."""
    try:
        if kubeconfig:
            return config.new_client_from_config(config_file=kubeconfig)
        config.load_incluster_config()
        return client.ApiClient()
    except config.ConfigException as err:
        logger.error(f"Error loading Kubernetes config: {err}")
        raise KubernetesException("Invalid Kubernetes config") from err


class KubernetesNodeClient:
    """Reads a node and swaps its labels with an optimistic concurrency check."""

    def __init__(self, core_api: client.CoreV1Api):
        """Initialize with a CoreV1Api instance."""
        self.core_api = core_api

    def get(self, name: str) -> NodeSnapshot:
        """Fetch the current state of the node.

        Raises:
            ResourceFetchError: If the node cannot be read.
        """
        try:
            node = self.core_api.read_node(name)
        except ApiException as err:
            raise ResourceFetchError(f"Failed to get node {name}: {err.reason}", status_code=err.status) from err
        except urllib3.exceptions.HTTPError as err:
            raise ResourceFetchError(f"Failed to get node {name}: {err}") from err
        return NodeSnapshot.from_node(node)

    def compare_and_swap_labels(self, name: str, expected: Mapping[str, str], desired: Mapping[str, str]) -> None:
        """Replace the node labels with `desired` if they still equal `expected`.

        Raises:
            ResourceConflictError: If the labels changed since they were read.
            ResourceWriteError: If the patch failed for any other reason.
        """
        body = build_labels_patch(expected, desired)
        try:
            self.core_api.patch_node(name, body)
        except ApiException as err:
            if err.status in CONFLICT_STATUS_CODES:
                raise ResourceConflictError(
                    f"Labels of node {name} changed concurrently: {err.reason}", status_code=err.status
                ) from err
            raise ResourceWriteError(f"Failed to patch node {name}: {err.reason}", status_code=err.status) from err
        except urllib3.exceptions.HTTPError as err:
            raise ResourceWriteError(f"Failed to patch node {name}: {err}") from err
        logger.info("Patched node labels", node=name, labels=len(desired))


class KubernetesEventRecorder:
    """Records events against nodes."""

    def __init__(self, core_api: client.CoreV1Api, namespace: str = "default", component: str = "node-labeller"):
        """Initialize with a CoreV1Api instance and the namespace events are written to."""
        self.core_api = core_api
        self.namespace = namespace
        self.component = component

    def warning(self, node: NodeSnapshot, reason: str, message: str) -> None:
        """Record a Warning event; failures are logged since events are advisory."""
        now = datetime.now(timezone.utc)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{node.name}."),
            involved_object=client.V1ObjectReference(
                api_version="v1",
                kind="Node",
                name=node.name,
                uid=node.uid or None,
            ),
            reason=reason,
            message=message,
            type="Warning",
            source=client.V1EventSource(component=self.component, host=node.name),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.core_api.create_namespaced_event(self.namespace, event)
        except (ApiException, urllib3.exceptions.HTTPError) as err:
            logger.error("Failed to record node event", node=node.name, reason=reason, error=str(err))
