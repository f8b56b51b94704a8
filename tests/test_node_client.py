"""Tests for the Kubernetes node client and event recorder."""

from unittest.mock import MagicMock, patch

import pytest
import urllib3.exceptions
from kubernetes import config
from kubernetes.client.rest import ApiException

from budlabeller.commons.exceptions import (
    KubernetesException,
    ResourceConflictError,
    ResourceFetchError,
    ResourceWriteError,
)
from budlabeller.labeller.node_client import (
    KubernetesEventRecorder,
    KubernetesNodeClient,
    NodeSnapshot,
    build_labels_patch,
    load_kube_client,
)


def _node(name="node01", labels=None, annotations=None, uid="uid-1"):
    node = MagicMock()
    node.metadata.name = name
    node.metadata.labels = labels
    node.metadata.annotations = annotations
    node.metadata.uid = uid
    return node


@pytest.fixture
def core_api():
    return MagicMock()


class TestNodeSnapshot:
    """Test snapshots built from V1Node objects."""

    def test_from_node(self):
        """Test labels and annotations are copied."""
        snapshot = NodeSnapshot.from_node(
            _node(labels={"kubernetes.io/hostname": "node01"}, annotations={"a": "b"})
        )

        assert snapshot == NodeSnapshot(
            name="node01", labels={"kubernetes.io/hostname": "node01"}, annotations={"a": "b"}, uid="uid-1"
        )

    def test_from_node_without_maps(self):
        """Test nodes without labels or annotations yield empty maps."""
        snapshot = NodeSnapshot.from_node(_node(uid=None))

        assert snapshot.labels == {}
        assert snapshot.annotations == {}
        assert snapshot.uid == ""


class TestBuildLabelsPatch:
    """Test the conditional label patch body."""

    def test_test_then_replace(self):
        """Test the patch asserts the old labels before replacing them."""
        body = build_labels_patch({"a": "1"}, {"a": "1", "b": "2"})

        assert body == [
            {"op": "test", "path": "/metadata/labels", "value": {"a": "1"}},
            {"op": "replace", "path": "/metadata/labels", "value": {"a": "1", "b": "2"}},
        ]

    def test_unlabelled_node_uses_add(self):
        """Test a node without labels gets its labels field created instead of tested."""
        body = build_labels_patch({}, {"kubevirt.io/sev": ""})

        assert body == [{"op": "add", "path": "/metadata/labels", "value": {"kubevirt.io/sev": ""}}]


class TestKubernetesNodeClient:
    """Test reads and conditional writes against CoreV1Api."""

    def test_get(self, core_api):
        """Test a node is read and converted to a snapshot."""
        core_api.read_node.return_value = _node(labels={"x": "y"})

        snapshot = KubernetesNodeClient(core_api).get("node01")

        core_api.read_node.assert_called_once_with("node01")
        assert snapshot.labels == {"x": "y"}

    def test_get_api_error(self, core_api):
        """Test API errors surface as ResourceFetchError."""
        core_api.read_node.side_effect = ApiException(status=404, reason="Not Found")

        with pytest.raises(ResourceFetchError) as exc_info:
            KubernetesNodeClient(core_api).get("node01")
        assert exc_info.value.status_code == 404

    def test_get_connection_error(self, core_api):
        """Test transport errors surface as ResourceFetchError."""
        core_api.read_node.side_effect = urllib3.exceptions.MaxRetryError(None, "/api/v1/nodes/node01")

        with pytest.raises(ResourceFetchError):
            KubernetesNodeClient(core_api).get("node01")

    def test_compare_and_swap(self, core_api):
        """Test the patch body sent to the API server."""
        KubernetesNodeClient(core_api).compare_and_swap_labels("node01", {"a": "1"}, {"b": "2"})

        core_api.patch_node.assert_called_once_with("node01", build_labels_patch({"a": "1"}, {"b": "2"}))

    @pytest.mark.parametrize("status", [409, 422])
    def test_conflict(self, core_api, status):
        """Test failed test operations surface as conflicts."""
        core_api.patch_node.side_effect = ApiException(status=status, reason="Conflict")

        with pytest.raises(ResourceConflictError) as exc_info:
            KubernetesNodeClient(core_api).compare_and_swap_labels("node01", {}, {"b": "2"})
        assert exc_info.value.status_code == status

    def test_write_error(self, core_api):
        """Test other API errors surface as plain write errors."""
        core_api.patch_node.side_effect = ApiException(status=500, reason="Internal Server Error")

        with pytest.raises(ResourceWriteError) as exc_info:
            KubernetesNodeClient(core_api).compare_and_swap_labels("node01", {}, {"b": "2"})
        assert not isinstance(exc_info.value, ResourceConflictError)
        assert str(exc_info.value).startswith("ResourceWriteError: ")


class TestKubernetesEventRecorder:
    """Test warning events raised against nodes."""

    def test_warning(self, core_api):
        """Test the event references the node."""
        recorder = KubernetesEventRecorder(core_api, namespace="kubevirt")

        recorder.warning(NodeSnapshot(name="node01", uid="uid-1"), "HostModelIsObsolete", "obsolete")

        namespace, event = core_api.create_namespaced_event.call_args[0]
        assert namespace == "kubevirt"
        assert event.type == "Warning"
        assert event.reason == "HostModelIsObsolete"
        assert event.message == "obsolete"
        assert event.involved_object.kind == "Node"
        assert event.involved_object.name == "node01"
        assert event.involved_object.uid == "uid-1"
        assert event.source.component == "node-labeller"

    def test_warning_failure_is_logged(self, core_api):
        """Test event failures do not propagate."""
        core_api.create_namespaced_event.side_effect = ApiException(status=403, reason="Forbidden")

        KubernetesEventRecorder(core_api).warning(NodeSnapshot(name="node01"), "HostModelIsObsolete", "obsolete")

        core_api.create_namespaced_event.assert_called_once()


class TestLoadKubeClient:
    """Test API client construction."""

    @patch("budlabeller.labeller.node_client.config.new_client_from_config")
    def test_from_kubeconfig(self, mock_new_client):
        """Test an explicit kubeconfig is used when given."""
        assert load_kube_client("/tmp/kubeconfig") is mock_new_client.return_value
        mock_new_client.assert_called_once_with(config_file="/tmp/kubeconfig")

    @patch("budlabeller.labeller.node_client.client.ApiClient")
    @patch("budlabeller.labeller.node_client.config.load_incluster_config")
    def test_in_cluster(self, mock_incluster, mock_api_client):
        """Test the service account is used without a kubeconfig."""
        assert load_kube_client() is mock_api_client.return_value
        mock_incluster.assert_called_once_with()

    @patch("budlabeller.labeller.node_client.config.load_incluster_config")
    def test_invalid_config(self, mock_incluster):
        """Test configuration errors surface as KubernetesException."""
        mock_incluster.side_effect = config.ConfigException("Service host/port is not set.")

        with pytest.raises(KubernetesException):
            load_kube_client()
