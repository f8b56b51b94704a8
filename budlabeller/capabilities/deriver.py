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

"""Derives the normalized host CPU facts from parsed capability descriptors.

Architecture specific quirks live in a single rule table (`ARCH_RULES`) that is
looked up once per derivation:

- ARM64 does not support the host-model CPU mode at all.
- s390x descriptors carry no CPU vendor and omit the feature policy attribute.
- Only amd64 and s390x ship a supported feature list.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from ..commons.constants import HOST_MODEL_MODE, POLICY_REQUIRE, S390X_DEFAULT_VENDOR, TSC_COUNTER_NAME, Arch
from ..commons.exceptions import DeriveError
from ..commons.observability import get_logger
from .schemas import CPUCounter, CPUMode, DomainCapabilities, FeatureList, HostCapabilities, SEVCapability


logger = get_logger(__name__)


@dataclass(frozen=True)
class ArchRules:
    """Per-architecture derivation rules."""

    default_vendor: str = ""
    include_unset_policy_features: bool = False
    host_model_supported: bool = True
    loads_supported_features: bool = False


ARCH_RULES = {
    Arch.AMD64: ArchRules(loads_supported_features=True),
    Arch.ARM64: ArchRules(host_model_supported=False),
    Arch.S390X: ArchRules(
        default_vendor=S390X_DEFAULT_VENDOR,
        include_unset_policy_features=True,
        loads_supported_features=True,
    ),
    Arch.OTHER: ArchRules(),
}


def rules_for(arch: Arch | str) -> ArchRules:
    """Look up the derivation rules of an architecture tag."""
    if not isinstance(arch, Arch):
        arch = Arch.from_tag(arch)
    return ARCH_RULES[arch]


def _unique(items: Iterable[str]) -> Tuple[str, ...]:
    """Drop duplicates, keeping the first occurrence."""
    return tuple(dict.fromkeys(items))


@dataclass
class SupportedCPU:
    """CPU facts extracted from the domain capabilities CPU modes."""

    vendor: str = ""
    model: str = ""
    required_features: List[str] = field(default_factory=list)
    usable_models: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SupportedSEV:
    """SEV facts extracted from the domain capabilities features block."""

    supported: bool = False
    supported_es: bool = False


class DerivedCapabilities(BaseModel):
    """Normalized host capability facts that feed the node labels."""

    model_config = ConfigDict(frozen=True)

    vendor: str = ""
    host_model: str = ""
    required_features: Tuple[str, ...] = ()
    usable_models: Tuple[str, ...] = ()
    sev_supported: bool = False
    sev_es_supported: bool = False
    supported_features: Tuple[str, ...] = ()
    hyperv_features: Tuple[str, ...] = ()
    cpu_counter: Optional[CPUCounter] = None

    @field_validator("required_features", "usable_models", "supported_features", "hyperv_features", mode="before")
    @classmethod
    def _deduplicate(cls, value: Sequence[str]) -> Tuple[str, ...]:
        return _unique(value)

    @model_validator(mode="after")
    def _check_sev(self) -> "DerivedCapabilities":
        if self.sev_es_supported and not self.sev_supported:
            raise ValueError("SEV-ES support requires SEV support")
        return self

    @property
    def has_tsc_counter(self) -> bool:
        """Whether the host exposes a TSC clock counter."""
        return self.cpu_counter is not None and self.cpu_counter.name == TSC_COUNTER_NAME


def supported_host_cpus(modes: Sequence[CPUMode], arch: Arch | str) -> SupportedCPU:
    """Extract the host-model CPU and the usable CPU models.

    Args:
        modes: CPU modes of the domain capabilities, in document order.
        arch: Architecture of the host.

    Returns:
        Vendor, representative model and required features of the host-model
        mode, plus every model marked usable in any mode.

    Raises:
        DeriveError: If the host-model mode lists no model.
    """
    rules = rules_for(arch)
    supported_cpu = SupportedCPU()

    for mode in modes:
        if mode.name == HOST_MODEL_MODE:
            if not rules.host_model_supported:
                logger.warning("host-model cpu mode is not supported for this architecture", arch=str(arch))
            else:
                supported_cpu.vendor = mode.vendor or rules.default_vendor

                if not mode.models:
                    raise DeriveError("host model mode expected to contain a model")
                if len(mode.models) > 1:
                    logger.warning(
                        "host model mode is expected to contain only one model",
                        models=[model.name for model in mode.models],
                    )

                supported_cpu.model = mode.models[0].name
                supported_cpu.required_features = list(
                    _unique(feature.name for feature in mode.features if feature.policy == POLICY_REQUIRE)
                )

        for model in mode.models:
            if model.usable == "yes" and model.name not in supported_cpu.usable_models:
                supported_cpu.usable_models.append(model.name)

    return supported_cpu


def supported_host_sev(sev: SEVCapability) -> SupportedSEV:
    """Derive SEV and SEV-ES support; SEV-ES needs SEV plus room for ES guests."""
    supported = sev.supported == "yes"
    return SupportedSEV(supported=supported, supported_es=supported and sev.max_es_guests > 0)


def supported_features(feature_list: FeatureList, arch: Arch | str) -> List[str]:
    """Return the names of the CPU features the host supports."""
    rules = rules_for(arch)
    names = []
    for feature in feature_list.features:
        if feature.policy == POLICY_REQUIRE or (rules.include_unset_policy_features and not feature.policy):
            names.append(feature.name)
    return list(_unique(names))


def is_obsolete(model: str, obsolete_models: Mapping[str, bool]) -> bool:
    """Whether the cluster configuration flags a CPU model as obsolete."""
    return bool(obsolete_models.get(model, False))


def supported_cpu_models(usable_models: Iterable[str], obsolete_models: Mapping[str, bool]) -> List[str]:
    """Filter obsolete models out of the usable ones, keeping their order."""
    return [model for model in usable_models if not is_obsolete(model, obsolete_models)]


def derive_capabilities(
    host_capabilities: HostCapabilities,
    domain_capabilities: DomainCapabilities,
    feature_list: Optional[FeatureList],
    arch: Arch | str,
    hyperv_features: Sequence[str] = (),
) -> DerivedCapabilities:
    """Combine the parsed descriptors into a single fact set.

    Args:
        host_capabilities: Parsed host capabilities, source of the CPU counter.
        domain_capabilities: Parsed domain capabilities, source of CPU modes and SEV.
        feature_list: Parsed CPU feature list, or None when the architecture has none.
        arch: Architecture of the host.
        hyperv_features: Hyper-V enlightenments to advertise.

    Returns:
        The derived capabilities.

    Raises:
        DeriveError: If the CPU modes cannot be interpreted.
    """
    cpu = supported_host_cpus(domain_capabilities.cpu.modes, arch)
    sev = supported_host_sev(domain_capabilities.features.sev)
    features = supported_features(feature_list, arch) if feature_list is not None else []

    return DerivedCapabilities(
        vendor=cpu.vendor,
        host_model=cpu.model,
        required_features=cpu.required_features,
        usable_models=cpu.usable_models,
        sev_supported=sev.supported,
        sev_es_supported=sev.supported_es,
        supported_features=features,
        hyperv_features=hyperv_features,
        cpu_counter=host_capabilities.host.cpu.counter,
    )
