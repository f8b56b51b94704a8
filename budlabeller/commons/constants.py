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

"""Defines constant values used throughout the labeller, including label keys and architecture tags."""

from enum import StrEnum


class Arch(StrEnum):
    """Host architecture tags.

    Values follow the Go runtime naming used by the virtualization stack, so that
    the capability files and the tag reported by the node agree.

    Attributes:
        AMD64: 64-bit x86.
        ARM64: 64-bit ARM.
        S390X: IBM Z.
        OTHER: Any architecture without special handling.
    """

    AMD64 = "amd64"
    ARM64 = "arm64"
    S390X = "s390x"
    OTHER = "other"

    @classmethod
    def from_tag(cls, tag: str) -> "Arch":
        """Resolve a GOARCH-style tag or a `platform.machine()` value."""
        normalized = (tag or "").strip().lower()
        return ARCH_ALIASES.get(normalized, cls.OTHER)


ARCH_ALIASES = {
    "amd64": Arch.AMD64,
    "x86_64": Arch.AMD64,
    "arm64": Arch.ARM64,
    "aarch64": Arch.ARM64,
    "s390x": Arch.S390X,
}

# Capability files written by the node capability probe
CAPABILITIES_VOLUME_PATH = "/var/lib/kubevirt-node-capabilities/"
HOST_CAPABILITIES_FILENAME = "capabilities.xml"
DOM_CAPABILITIES_FILENAME = "virsh_domcapabilities.xml"
SUPPORTED_FEATURES_FILENAME = "supported_features.xml"

HOST_MODEL_MODE = "host-model"
POLICY_REQUIRE = "require"
TSC_COUNTER_NAME = "tsc"
S390X_DEFAULT_VENDOR = "IBM"

# Node label prefixes, each followed by a feature or model name
CPU_FEATURE_LABEL = "cpu-feature.node.kubevirt.io/"
CPU_MODEL_LABEL = "cpu-model.node.kubevirt.io/"
SUPPORTED_HOST_MODEL_MIGRATION_CPU_LABEL = "cpu-model-migration.node.kubevirt.io/"
CPU_TIMER_LABEL = "cpu-timer.node.kubevirt.io/"
HYPERV_LABEL = "hyperv.node.kubevirt.io/"
CPU_MODEL_VENDOR_LABEL = "cpu-vendor.node.kubevirt.io/"
HOST_MODEL_CPU_LABEL = "host-model-cpu.node.kubevirt.io/"
HOST_MODEL_REQUIRED_FEATURES_LABEL = "host-model-required-features.node.kubevirt.io/"

# Exact node label keys
NODE_HOST_MODEL_IS_OBSOLETE_LABEL = "node-labeller.kubevirt.io/obsolete-host-model"
REALTIME_LABEL = "kubevirt.io/realtime"
SEV_LABEL = "kubevirt.io/sev"
SEV_ES_LABEL = "kubevirt.io/sev-es"

LABELLER_SKIP_NODE_ANNOTATION = "node-labeller.kubevirt.io/skip-node"

HOST_MODEL_IS_OBSOLETE_REASON = "HostModelIsObsolete"

# Hyper-V enlightenments exposed on every node
HYPERV_FEATURES = (
    "base",
    "frequencies",
    "ipi",
    "reenlightenment",
    "reset",
    "runtime",
    "synic",
    "synic2",
    "synictimer",
    "time",
    "tlbflush",
    "vpindex",
)

DEFAULT_OBSOLETE_CPU_MODELS = (
    "486",
    "pentium",
    "pentium2",
    "pentium3",
    "pentiumpro",
    "coreduo",
    "n270",
    "core2duo",
    "Conroe",
    "athlon",
    "phenom",
    "qemu64",
    "qemu32",
    "kvm64",
    "kvm32",
)

KERNEL_SCHED_RT_RUNTIME_SETTING = "kernel.sched_rt_runtime_us"

JSON_PATCH_LABELS_PATH = "/metadata/labels"
