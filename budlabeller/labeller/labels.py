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

"""Maps derived host capabilities to the node labels owned by the labeller."""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping

from ..capabilities.deriver import DerivedCapabilities, is_obsolete, supported_cpu_models
from ..commons.constants import (
    CPU_FEATURE_LABEL,
    CPU_MODEL_LABEL,
    CPU_MODEL_VENDOR_LABEL,
    CPU_TIMER_LABEL,
    HOST_MODEL_CPU_LABEL,
    HOST_MODEL_IS_OBSOLETE_REASON,
    HOST_MODEL_REQUIRED_FEATURES_LABEL,
    HYPERV_LABEL,
    NODE_HOST_MODEL_IS_OBSOLETE_LABEL,
    REALTIME_LABEL,
    SEV_ES_LABEL,
    SEV_LABEL,
    SUPPORTED_HOST_MODEL_MIGRATION_CPU_LABEL,
)


@dataclass(frozen=True)
class ManagedLabelDomain:
    """Label keys owned by the labeller.

    A key is owned when its prefix, everything up to and including the last
    `/`, is one of `prefixes`, or when the whole key is one of `keys`.
    """

    prefixes: FrozenSet[str]
    keys: FrozenSet[str]

    def owns(self, label: str) -> bool:
        """Whether the label key belongs to the labeller."""
        if label in self.keys:
            return True
        separator = label.rfind("/")
        return separator >= 0 and label[: separator + 1] in self.prefixes

    def strip(self, labels: Mapping[str, str]) -> Dict[str, str]:
        """Return the labels that are not owned by the labeller."""
        return {key: value for key, value in labels.items() if not self.owns(key)}

    def select(self, labels: Mapping[str, str]) -> Dict[str, str]:
        """Return the labels owned by the labeller."""
        return {key: value for key, value in labels.items() if self.owns(key)}

    def replace(self, labels: Mapping[str, str], desired: Mapping[str, str]) -> Dict[str, str]:
        """Swap every owned label for the desired ones, keeping foreign labels untouched."""
        replaced = self.strip(labels)
        replaced.update(desired)
        return replaced


MANAGED_LABEL_DOMAIN = ManagedLabelDomain(
    prefixes=frozenset(
        {
            CPU_FEATURE_LABEL,
            CPU_MODEL_LABEL,
            SUPPORTED_HOST_MODEL_MIGRATION_CPU_LABEL,
            CPU_TIMER_LABEL,
            HYPERV_LABEL,
            CPU_MODEL_VENDOR_LABEL,
            HOST_MODEL_CPU_LABEL,
            HOST_MODEL_REQUIRED_FEATURES_LABEL,
        }
    ),
    keys=frozenset(
        {
            NODE_HOST_MODEL_IS_OBSOLETE_LABEL,
            REALTIME_LABEL,
            SEV_LABEL,
            SEV_ES_LABEL,
        }
    ),
)


@dataclass(frozen=True)
class Advisory:
    """Out-of-band warning to raise against the node."""

    reason: str
    message: str


@dataclass
class LabelPlan:
    """Desired labeller labels plus the advisories raised while computing them."""

    labels: Dict[str, str] = field(default_factory=dict)
    advisories: List[Advisory] = field(default_factory=list)


def _flag_labels(prefix: str, names: Iterable[str]) -> Dict[str, str]:
    return {prefix + name: "true" for name in names if name}


def build_labels(
    derived: DerivedCapabilities,
    obsolete_models: Mapping[str, bool],
    realtime_capable: bool,
) -> LabelPlan:
    """Compute the labeller labels for the node.

    The result only depends on its arguments, so equal inputs always yield equal
    label sets.

    Args:
        derived: Capability facts of the host.
        obsolete_models: CPU models flagged as obsolete by the cluster configuration.
        realtime_capable: Outcome of the realtime probe.

    Returns:
        The label plan.
    """
    labels: Dict[str, str] = {}
    advisories: List[Advisory] = []
    host_model = derived.host_model
    host_model_obsolete = bool(host_model) and is_obsolete(host_model, obsolete_models)

    labels.update(_flag_labels(CPU_FEATURE_LABEL, derived.supported_features))

    for model in supported_cpu_models(derived.usable_models, obsolete_models):
        labels[CPU_MODEL_LABEL + model] = "true"
        labels[SUPPORTED_HOST_MODEL_MIGRATION_CPU_LABEL + model] = "true"

    if host_model and not host_model_obsolete:
        labels[SUPPORTED_HOST_MODEL_MIGRATION_CPU_LABEL + host_model] = "true"

    labels.update(_flag_labels(HYPERV_LABEL, derived.hyperv_features))

    if derived.has_tsc_counter:
        labels[CPU_TIMER_LABEL + "tsc-frequency"] = str(derived.cpu_counter.frequency)
        labels[CPU_TIMER_LABEL + "tsc-scalable"] = "true" if derived.cpu_counter.scalable else "false"

    labels.update(_flag_labels(HOST_MODEL_REQUIRED_FEATURES_LABEL, derived.required_features))

    if host_model_obsolete:
        labels[NODE_HOST_MODEL_IS_OBSOLETE_LABEL] = "true"
        obsolete_names = sorted(name for name, flag in obsolete_models.items() if flag)
        advisories.append(
            Advisory(
                reason=HOST_MODEL_IS_OBSOLETE_REASON,
                message=(
                    f"This node has {host_model} host-model cpu that is included in "
                    f"ObsoleteCPUModels: {', '.join(obsolete_names)}"
                ),
            )
        )

    labels.update(_flag_labels(CPU_MODEL_VENDOR_LABEL, [derived.vendor]))
    labels.update(_flag_labels(HOST_MODEL_CPU_LABEL, [host_model]))

    if realtime_capable:
        labels[REALTIME_LABEL] = ""
    if derived.sev_supported:
        labels[SEV_LABEL] = ""
    if derived.sev_es_supported:
        labels[SEV_ES_LABEL] = ""

    return LabelPlan(labels=labels, advisories=advisories)
