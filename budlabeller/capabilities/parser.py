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

"""Structural parser for libvirt capability descriptors.

Turns the XML written by the capability probe into the immutable models of
`budlabeller.capabilities.schemas`. No architecture specific interpretation
happens here; see `budlabeller.capabilities.deriver` for that.
"""

from typing import Optional, Union

from lxml import etree

from ..commons.exceptions import ParseError
from ..commons.observability import get_logger
from .schemas import (
    NUMACPU,
    CPUCounter,
    CPUFeature,
    CPUMode,
    CPUModel,
    DomainCapabilities,
    DomainCPU,
    DomainFeatures,
    FeatureList,
    Host,
    HostCapabilities,
    HostCPU,
    NUMACell,
    NUMAMemory,
    NUMAPageInfo,
    NUMASibling,
    NUMATopology,
    SEVCapability,
)


logger = get_logger(__name__)

DescriptorSource = Union[str, bytes]


def _parse_root(source: DescriptorSource, expected_tag: str) -> etree._Element:
    """Parse the document and check its root element."""
    if isinstance(source, str):
        source = source.encode("utf-8")
    parser = etree.XMLParser(resolve_entities=False, no_network=True, remove_comments=True)
    try:
        root = etree.fromstring(source, parser=parser)
    except etree.XMLSyntaxError as err:
        raise ParseError(f"Malformed {expected_tag} descriptor: {err}") from err
    if root is None:
        raise ParseError(f"Empty {expected_tag} descriptor")
    if root.tag != expected_tag:
        raise ParseError(f"Expected <{expected_tag}> root element, found <{root.tag}>")
    return root


def _text(element: Optional[etree._Element], default: str = "") -> str:
    if element is None or element.text is None:
        return default
    return element.text.strip()


def _to_int(value: Optional[str], field: str, default: Optional[int] = 0) -> Optional[int]:
    """Convert an attribute or element text to a non-negative integer."""
    if value is None or value.strip() == "":
        return default
    try:
        number = int(value.strip())
    except ValueError as err:
        raise ParseError(f"Invalid integer for {field}: {value!r}") from err
    if number < 0:
        raise ParseError(f"Negative value for {field}: {number}")
    return number


def _required_int(element: etree._Element, attribute: str) -> int:
    value = element.get(attribute)
    if value is None:
        raise ParseError(f"<{element.tag}> is missing the {attribute!r} attribute")
    return _to_int(value, f"{element.tag}@{attribute}")


def _parse_feature(element: etree._Element) -> CPUFeature:
    name = element.get("name")
    if not name:
        raise ParseError("<feature> is missing the 'name' attribute")
    return CPUFeature(name=name, policy=element.get("policy", ""))


def _parse_counter(element: Optional[etree._Element]) -> Optional[CPUCounter]:
    if element is None:
        return None
    return CPUCounter(
        name=element.get("name", ""),
        frequency=_to_int(element.get("frequency"), "counter@frequency"),
        scaling=element.get("scaling", ""),
    )


def _parse_numa_cell(element: etree._Element) -> NUMACell:
    memory = None
    memory_element = element.find("memory")
    if memory_element is not None:
        memory = NUMAMemory(size=_to_int(_text(memory_element), "memory"), unit=memory_element.get("unit", ""))

    pages = tuple(
        NUMAPageInfo(
            count=_to_int(_text(page), "pages"),
            unit=page.get("unit", ""),
            size=_to_int(page.get("size"), "pages@size"),
        )
        for page in element.findall("pages")
    )
    distances = tuple(
        NUMASibling(id=_required_int(sibling, "id"), value=_required_int(sibling, "value"))
        for sibling in element.findall("distances/sibling")
    )

    cpus_element = element.find("cpus")
    cpus = ()
    cpu_count = 0
    if cpus_element is not None:
        cpu_count = _to_int(cpus_element.get("num"), "cpus@num")
        cpus = tuple(
            NUMACPU(
                id=_required_int(cpu, "id"),
                socket_id=_to_int(cpu.get("socket_id"), "cpu@socket_id", default=None),
                die_id=_to_int(cpu.get("die_id"), "cpu@die_id", default=None),
                core_id=_to_int(cpu.get("core_id"), "cpu@core_id", default=None),
                siblings=cpu.get("siblings", ""),
            )
            for cpu in cpus_element.findall("cpu")
        )

    return NUMACell(
        id=_required_int(element, "id"),
        memory=memory,
        pages=pages,
        distances=distances,
        cpu_count=cpu_count,
        cpus=cpus,
    )


def parse_host_capabilities(source: DescriptorSource) -> HostCapabilities:
    """Parse the host capabilities descriptor.

    Args:
        source: `virsh capabilities` XML.

    Returns:
        The parsed host capabilities.

    Raises:
        ParseError: If the document is malformed or not a capabilities document.
    """
    root = _parse_root(source, "capabilities")
    host_element = root.find("host")
    if host_element is None:
        return HostCapabilities()

    cpu = HostCPU()
    cpu_element = host_element.find("cpu")
    if cpu_element is not None:
        cpu = HostCPU(
            arch=_text(cpu_element.find("arch")),
            model=_text(cpu_element.find("model")),
            vendor=_text(cpu_element.find("vendor")),
            counter=_parse_counter(cpu_element.find("counter")),
        )

    numa = NUMATopology()
    cells_element = host_element.find("topology/cells")
    if cells_element is not None:
        numa = NUMATopology(
            num=_to_int(cells_element.get("num"), "cells@num"),
            cells=tuple(_parse_numa_cell(cell) for cell in cells_element.findall("cell")),
        )

    return HostCapabilities(host=Host(uuid=_text(host_element.find("uuid")), cpu=cpu, numa=numa))


def _parse_mode(element: etree._Element) -> CPUMode:
    name = element.get("name")
    if not name:
        raise ParseError("<mode> is missing the 'name' attribute")

    models = []
    for model in element.findall("model"):
        model_name = _text(model)
        if not model_name:
            raise ParseError(f"Empty <model> entry in cpu mode {name!r}")
        models.append(
            CPUModel(
                name=model_name,
                usable=model.get("usable", ""),
                fallback=model.get("fallback", ""),
                vendor=model.get("vendor", ""),
            )
        )

    return CPUMode(
        name=name,
        supported=element.get("supported", ""),
        vendor=_text(element.find("vendor")),
        models=tuple(models),
        features=tuple(_parse_feature(feature) for feature in element.findall("feature")),
    )


def _parse_sev(element: Optional[etree._Element]) -> SEVCapability:
    if element is None:
        return SEVCapability()
    return SEVCapability(
        supported=element.get("supported", "no"),
        cbitpos=_to_int(_text(element.find("cbitpos")), "sev/cbitpos"),
        reduced_phys_bits=_to_int(_text(element.find("reducedPhysBits")), "sev/reducedPhysBits"),
        max_guests=_to_int(_text(element.find("maxGuests")), "sev/maxGuests"),
        max_es_guests=_to_int(_text(element.find("maxESGuests")), "sev/maxESGuests"),
    )


def parse_domain_capabilities(source: DescriptorSource) -> DomainCapabilities:
    """Parse the domain capabilities descriptor.

    Args:
        source: `virsh domcapabilities` XML.

    Returns:
        The parsed domain capabilities with CPU modes in document order.

    Raises:
        ParseError: If the document is malformed or not a domain capabilities document.
    """
    root = _parse_root(source, "domainCapabilities")
    modes = tuple(_parse_mode(mode) for mode in root.findall("cpu/mode"))
    logger.debug("Parsed domain capabilities", modes=[mode.name for mode in modes])
    return DomainCapabilities(
        path=_text(root.find("path")),
        domain=_text(root.find("domain")),
        machine=_text(root.find("machine")),
        arch=_text(root.find("arch")),
        cpu=DomainCPU(modes=modes),
        features=DomainFeatures(sev=_parse_sev(root.find("features/sev"))),
    )


def parse_feature_list(source: DescriptorSource) -> FeatureList:
    """Parse the CPU feature list descriptor.

    Args:
        source: CPU definition XML listing the features of the host CPU.

    Returns:
        The feature entries in document order.

    Raises:
        ParseError: If the document is malformed or not a CPU definition.
    """
    root = _parse_root(source, "cpu")
    return FeatureList(features=tuple(_parse_feature(feature) for feature in root.findall("feature")))
