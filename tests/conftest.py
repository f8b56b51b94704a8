"""Pytest configuration and fixtures for budlabeller tests."""

import shutil
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from budlabeller.capabilities.deriver import DerivedCapabilities
from budlabeller.capabilities.schemas import CPUCounter
from budlabeller.commons.exceptions import ResourceConflictError
from budlabeller.labeller.node_client import NodeSnapshot


TESTDATA = Path(__file__).parent / "testdata"


class FakeNodeClient:
    """In-memory node store that enforces the compare-and-swap contract."""

    def __init__(self, name: str, labels: Optional[Dict[str, str]] = None, annotations=None):
        self.name = name
        self.labels = dict(labels or {})
        self.annotations = dict(annotations or {})
        self.patches: List[Dict[str, str]] = []
        self.get_calls = 0

    def get(self, name: str) -> NodeSnapshot:
        self.get_calls += 1
        return NodeSnapshot(name=name, labels=dict(self.labels), annotations=dict(self.annotations), uid="uid-1")

    def compare_and_swap_labels(self, name, expected, desired) -> None:
        if dict(expected) != self.labels:
            raise ResourceConflictError(f"Labels of node {name} changed concurrently", status_code=422)
        self.labels = dict(desired)
        self.patches.append(dict(desired))


class RecordingEventRecorder:
    """Collects warning events instead of sending them."""

    def __init__(self):
        self.events = []

    def warning(self, node, reason, message) -> None:
        self.events.append((node.name, reason, message))


@pytest.fixture
def read_testdata() -> Callable[[str], str]:
    """Return a reader for files under tests/testdata."""

    def _read(name: str) -> str:
        return (TESTDATA / name).read_text()

    return _read


@pytest.fixture
def capabilities_volume(tmp_path) -> Path:
    """Capability volume populated with the amd64 descriptors."""
    volume = tmp_path / "amd64"
    volume.mkdir()
    for name in ("capabilities.xml", "virsh_domcapabilities.xml", "supported_features.xml"):
        shutil.copy(TESTDATA / name, volume / name)
    return volume


@pytest.fixture
def s390x_capabilities_volume(tmp_path) -> Path:
    """Capability volume populated with the s390x descriptors."""
    volume = tmp_path / "s390x"
    volume.mkdir()
    shutil.copy(TESTDATA / "capabilities_no_counter.xml", volume / "capabilities.xml")
    for name in ("virsh_domcapabilities.xml", "supported_features.xml"):
        shutil.copy(TESTDATA / "s390x" / name, volume / name)
    return volume


@pytest.fixture
def derived_capabilities() -> DerivedCapabilities:
    """Derived facts of a small Intel host."""
    return DerivedCapabilities(
        vendor="Intel",
        host_model="Skylake-Client-IBRS",
        required_features=["ds", "ss"],
        usable_models=["Penryn", "Haswell"],
        sev_supported=True,
        sev_es_supported=False,
        supported_features=["vmx", "pdcm"],
        hyperv_features=["synic", "vpindex"],
        cpu_counter=CPUCounter(name="tsc", frequency=4008012000, scaling="no"),
    )


@pytest.fixture
def fake_node_client() -> FakeNodeClient:
    """Node store holding a node with one foreign label."""
    return FakeNodeClient("node01", labels={"kubernetes.io/hostname": "node01"})


@pytest.fixture
def event_recorder() -> RecordingEventRecorder:
    """Event recorder collecting warnings in memory."""
    return RecordingEventRecorder()
