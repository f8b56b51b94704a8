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

"""Loads the capability files of the node and keeps the last derived facts."""

from pathlib import Path
from typing import Callable, Optional, Sequence, TypeVar

from ..commons.constants import (
    DOM_CAPABILITIES_FILENAME,
    HOST_CAPABILITIES_FILENAME,
    HYPERV_FEATURES,
    SUPPORTED_FEATURES_FILENAME,
    Arch,
)
from ..commons.exceptions import LabellerException, ParseError
from ..commons.observability import get_logger
from .deriver import DerivedCapabilities, derive_capabilities, rules_for
from .parser import parse_domain_capabilities, parse_feature_list, parse_host_capabilities
from .schemas import DomainCapabilities, FeatureList, HostCapabilities


logger = get_logger(__name__)

T = TypeVar("T")


class NodeCapabilitiesManager:
    """Owns the capability facts of the node.

    The manager is constructed once and handed to the reconcile loop, which calls
    `load()` at the start of every cycle. A failed load leaves the previously
    derived facts in place and propagates the error.
    """

    def __init__(
        self,
        volume_path: Path | str,
        arch: Arch | str,
        domcapabilities_filename: str = DOM_CAPABILITIES_FILENAME,
        hyperv_features: Sequence[str] = HYPERV_FEATURES,
    ):
        """Initialize the manager for a capability volume and an architecture."""
        self.volume_path = Path(volume_path)
        self.arch = arch if isinstance(arch, Arch) else Arch.from_tag(arch)
        self.domcapabilities_filename = domcapabilities_filename
        self.hyperv_features = tuple(hyperv_features)
        self._host_capabilities: Optional[HostCapabilities] = None
        self._domain_capabilities: Optional[DomainCapabilities] = None
        self._derived: Optional[DerivedCapabilities] = None

    @property
    def derived(self) -> Optional[DerivedCapabilities]:
        """Facts of the last successful load, if any."""
        return self._derived

    @property
    def host_capabilities(self) -> Optional[HostCapabilities]:
        """Host capabilities of the last successful load, if any."""
        return self._host_capabilities

    @property
    def domain_capabilities(self) -> Optional[DomainCapabilities]:
        """Domain capabilities of the last successful load, if any."""
        return self._domain_capabilities

    def _read(self, filename: str, parse: Callable[[bytes], T]) -> T:
        path = self.volume_path / filename
        try:
            content = path.read_bytes()
        except OSError as err:
            raise ParseError(f"Could not read {path}: {err}") from err
        return parse(content)

    def load(self) -> DerivedCapabilities:
        """Read, parse and derive all capability descriptors.

        Returns:
            The freshly derived capabilities.

        Raises:
            ParseError: If a descriptor is missing or malformed.
            DeriveError: If the descriptors lack the facts needed for labelling.
        """
        feature_list: Optional[FeatureList] = None
        # hypervisor-cpu-baseline is not available everywhere, e.g. on ARM64
        if rules_for(self.arch).loads_supported_features:
            feature_list = self._load_step(SUPPORTED_FEATURES_FILENAME, parse_feature_list)

        domain_capabilities = self._load_step(self.domcapabilities_filename, parse_domain_capabilities)
        host_capabilities = self._load_step(HOST_CAPABILITIES_FILENAME, parse_host_capabilities)

        try:
            derived = derive_capabilities(
                host_capabilities,
                domain_capabilities,
                feature_list,
                self.arch,
                hyperv_features=self.hyperv_features,
            )
        except LabellerException as err:
            logger.error("node-labeller could not derive host capabilities", error=err.message)
            raise

        self._host_capabilities = host_capabilities
        self._domain_capabilities = domain_capabilities
        self._derived = derived
        return derived

    def _load_step(self, filename: str, parse: Callable[[bytes], T]) -> T:
        try:
            return self._read(filename, parse)
        except ParseError as err:
            logger.error("node-labeller could not load capabilities", file=filename, error=err.message)
            raise
