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

"""Typed views of the libvirt capability descriptors consumed by the labeller."""

from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict


class CapabilityModel(BaseModel):
    """Immutable base for parsed capability structures."""

    model_config = ConfigDict(frozen=True)


class CPUCounter(CapabilityModel):
    """Host CPU clock counter, e.g. the TSC."""

    name: str = ""
    frequency: int = 0
    scaling: str = ""

    @property
    def scalable(self) -> bool:
        """Whether the counter frequency scales."""
        return self.scaling == "yes"


class HostCPU(CapabilityModel):
    """CPU block of the host capabilities."""

    arch: str = ""
    model: str = ""
    vendor: str = ""
    counter: Optional[CPUCounter] = None


class NUMAMemory(CapabilityModel):
    """Memory size of a NUMA cell."""

    size: int = 0
    unit: str = ""


class NUMAPageInfo(CapabilityModel):
    """Page count for a single page size."""

    count: int = 0
    unit: str = ""
    size: int = 0


class NUMASibling(CapabilityModel):
    """Distance from a NUMA cell to another cell."""

    id: int
    value: int


class NUMACPU(CapabilityModel):
    """CPU placement within a NUMA cell."""

    id: int
    socket_id: Optional[int] = None
    die_id: Optional[int] = None
    core_id: Optional[int] = None
    siblings: str = ""


class NUMACell(CapabilityModel):
    """Single NUMA cell of the host topology."""

    id: int
    memory: Optional[NUMAMemory] = None
    pages: Tuple[NUMAPageInfo, ...] = ()
    distances: Tuple[NUMASibling, ...] = ()
    cpu_count: int = 0
    cpus: Tuple[NUMACPU, ...] = ()


class NUMATopology(CapabilityModel):
    """NUMA layout of the host."""

    num: int = 0
    cells: Tuple[NUMACell, ...] = ()


class Host(CapabilityModel):
    """Host section of the host capabilities."""

    uuid: str = ""
    cpu: HostCPU = HostCPU()
    numa: NUMATopology = NUMATopology()


class HostCapabilities(CapabilityModel):
    """Parsed `virsh capabilities` output."""

    host: Host = Host()


class CPUModel(CapabilityModel):
    """CPU model entry of a domain capabilities CPU mode."""

    name: str
    usable: str = ""
    fallback: str = ""
    vendor: str = ""


class CPUFeature(CapabilityModel):
    """CPU feature entry carrying a policy tag."""

    name: str
    policy: str = ""


class CPUMode(CapabilityModel):
    """CPU mode advertised by the hypervisor (host-passthrough, host-model, custom...)."""

    name: str
    supported: str = ""
    vendor: str = ""
    models: Tuple[CPUModel, ...] = ()
    features: Tuple[CPUFeature, ...] = ()


class DomainCPU(CapabilityModel):
    """CPU block of the domain capabilities."""

    modes: Tuple[CPUMode, ...] = ()


class SEVCapability(CapabilityModel):
    """AMD SEV capability entry."""

    supported: str = "no"
    cbitpos: int = 0
    reduced_phys_bits: int = 0
    max_guests: int = 0
    max_es_guests: int = 0


class DomainFeatures(CapabilityModel):
    """Features block of the domain capabilities."""

    sev: SEVCapability = SEVCapability()


class DomainCapabilities(CapabilityModel):
    """Parsed `virsh domcapabilities` output."""

    path: str = ""
    domain: str = ""
    machine: str = ""
    arch: str = ""
    cpu: DomainCPU = DomainCPU()
    features: DomainFeatures = DomainFeatures()


class FeatureList(CapabilityModel):
    """Parsed CPU feature list, as produced by `virsh hypervisor-cpu-baseline`."""

    features: Tuple[CPUFeature, ...] = ()
