"""Tests for the host capability derivation rules."""

import pytest
from pydantic import ValidationError

from budlabeller.capabilities.deriver import (
    DerivedCapabilities,
    derive_capabilities,
    is_obsolete,
    rules_for,
    supported_cpu_models,
    supported_features,
    supported_host_cpus,
    supported_host_sev,
)
from budlabeller.capabilities.parser import (
    parse_domain_capabilities,
    parse_feature_list,
    parse_host_capabilities,
)
from budlabeller.capabilities.schemas import CPUMode, CPUModel, SEVCapability
from budlabeller.commons.constants import Arch
from budlabeller.commons.exceptions import DeriveError


@pytest.fixture
def amd64_modes(read_testdata):
    """CPU modes of the amd64 domain capabilities."""
    return parse_domain_capabilities(read_testdata("virsh_domcapabilities.xml")).cpu.modes


class TestSupportedHostCPUs:
    """Test extraction of host-model and usable CPU models."""

    def test_usable_models(self, amd64_modes):
        """Test only models marked usable are collected, in order."""
        cpu = supported_host_cpus(amd64_modes, Arch.AMD64)

        assert cpu.usable_models == ["Penryn", "IvyBridge", "Haswell", "Conroe", "Nehalem"]

    def test_host_model(self, amd64_modes):
        """Test vendor, model and required features of the host-model mode."""
        cpu = supported_host_cpus(amd64_modes, Arch.AMD64)

        assert cpu.vendor == "Intel"
        assert cpu.model == "Skylake-Client-IBRS"
        assert cpu.required_features == ["ds", "acpi", "ss"]

    def test_nothing_usable(self, read_testdata):
        """Test a descriptor without usable models."""
        modes = parse_domain_capabilities(read_testdata("virsh_domcapabilities_nothing_usable.xml")).cpu.modes

        assert supported_host_cpus(modes, Arch.AMD64).usable_models == []

    def test_s390x_default_vendor(self, read_testdata):
        """Test s390x hosts default the vendor to IBM."""
        modes = parse_domain_capabilities(read_testdata("s390x/virsh_domcapabilities.xml")).cpu.modes

        cpu = supported_host_cpus(modes, Arch.S390X)

        assert cpu.vendor == "IBM"
        assert cpu.model == "gen15a-base"
        assert cpu.required_features == ["aen", "cmmnt", "vxpdeh"]
        assert cpu.usable_models == ["z13", "z14"]

    def test_amd64_without_vendor(self, read_testdata):
        """Test the vendor stays empty on amd64 when the descriptor has none."""
        modes = parse_domain_capabilities(read_testdata("s390x/virsh_domcapabilities.xml")).cpu.modes

        assert supported_host_cpus(modes, Arch.AMD64).vendor == ""

    def test_arm64_skips_host_model(self, amd64_modes):
        """Test the host-model mode is ignored on ARM64 while usable models are kept."""
        cpu = supported_host_cpus(amd64_modes, Arch.ARM64)

        assert cpu.model == ""
        assert cpu.vendor == ""
        assert cpu.required_features == []
        assert cpu.usable_models == ["Penryn", "IvyBridge", "Haswell", "Conroe", "Nehalem"]

    def test_arm64_collects_usable_from_host_model(self):
        """Test usable models listed under host-model are still collected on ARM64."""
        modes = [CPUMode(name="host-model", models=(CPUModel(name="cortex-a72", usable="yes"),))]

        assert supported_host_cpus(modes, "aarch64").usable_models == ["cortex-a72"]

    def test_host_model_without_model(self):
        """Test a host-model mode with no model is rejected."""
        modes = [CPUMode(name="host-model", vendor="Intel")]

        with pytest.raises(DeriveError, match="host model mode expected to contain a model"):
            supported_host_cpus(modes, Arch.AMD64)

    def test_host_model_with_several_models(self):
        """Test the first model wins when the host-model mode lists several."""
        modes = [CPUMode(name="host-model", models=(CPUModel(name="first"), CPUModel(name="second")))]

        assert supported_host_cpus(modes, Arch.AMD64).model == "first"


class TestSupportedHostSEV:
    """Test SEV and SEV-ES derivation."""

    @pytest.mark.parametrize(
        "sev, expected",
        [
            (SEVCapability(supported="no"), (False, False)),
            (SEVCapability(supported="no", max_es_guests=15), (False, False)),
            (SEVCapability(supported="yes", max_es_guests=0), (True, False)),
            (SEVCapability(supported="yes", max_es_guests=15), (True, True)),
        ],
    )
    def test_sev_support(self, sev, expected):
        """Test SEV-ES requires SEV and ES guest slots."""
        result = supported_host_sev(sev)

        assert (result.supported, result.supported_es) == expected

    @pytest.mark.parametrize(
        "filename, expected",
        [
            ("domcapabilities_nosev.xml", (False, False)),
            ("domcapabilities_sev.xml", (True, False)),
            ("domcapabilities_seves.xml", (True, True)),
        ],
    )
    def test_sev_from_descriptor(self, read_testdata, filename, expected):
        """Test SEV derivation from parsed descriptors."""
        sev = parse_domain_capabilities(read_testdata(filename)).features.sev

        result = supported_host_sev(sev)

        assert (result.supported, result.supported_es) == expected


class TestSupportedFeatures:
    """Test the supported feature list filtering."""

    def test_amd64_require_policy(self, read_testdata):
        """Test only required features are kept on amd64."""
        feature_list = parse_feature_list(read_testdata("supported_features.xml"))

        assert supported_features(feature_list, Arch.AMD64) == ["ss", "vmx", "pdcm", "hypervisor"]

    def test_s390x_unset_policy(self, read_testdata):
        """Test features without a policy count on s390x."""
        feature_list = parse_feature_list(read_testdata("s390x/supported_features.xml"))

        assert len(supported_features(feature_list, Arch.S390X)) == 6

    def test_amd64_ignores_unset_policy(self, read_testdata):
        """Test the s390x list yields nothing when read as amd64."""
        feature_list = parse_feature_list(read_testdata("s390x/supported_features.xml"))

        assert supported_features(feature_list, Arch.AMD64) == []


class TestObsoleteModels:
    """Test the obsolete CPU model filter."""

    def test_filters_obsolete(self):
        """Test flagged models are removed."""
        assert supported_cpu_models(["A", "B"], {"A": True}) == ["B"]

    def test_false_flag_is_not_obsolete(self):
        """Test a model mapped to False stays usable."""
        assert is_obsolete("A", {"A": False}) is False
        assert supported_cpu_models(["A", "B"], {"A": False}) == ["A", "B"]

    def test_empty_map(self):
        """Test an empty map keeps every model."""
        assert supported_cpu_models(["Penryn", "Conroe"], {}) == ["Penryn", "Conroe"]


class TestDeriveCapabilities:
    """Test the combined derivation."""

    def test_amd64_host(self, read_testdata):
        """Test the derived facts of the amd64 fixtures."""
        derived = derive_capabilities(
            parse_host_capabilities(read_testdata("capabilities.xml")),
            parse_domain_capabilities(read_testdata("virsh_domcapabilities.xml")),
            parse_feature_list(read_testdata("supported_features.xml")),
            Arch.AMD64,
            hyperv_features=("synic", "vpindex"),
        )

        assert derived.vendor == "Intel"
        assert derived.host_model == "Skylake-Client-IBRS"
        assert derived.required_features == ("ds", "acpi", "ss")
        assert derived.usable_models == ("Penryn", "IvyBridge", "Haswell", "Conroe", "Nehalem")
        assert derived.supported_features == ("ss", "vmx", "pdcm", "hypervisor")
        assert derived.hyperv_features == ("synic", "vpindex")
        assert derived.sev_supported is False
        assert derived.has_tsc_counter is True
        assert derived.cpu_counter.frequency == 4008012000

    def test_without_feature_list(self, read_testdata):
        """Test a missing feature list yields no supported features."""
        derived = derive_capabilities(
            parse_host_capabilities(read_testdata("capabilities_no_counter.xml")),
            parse_domain_capabilities(read_testdata("virsh_domcapabilities.xml")),
            None,
            Arch.ARM64,
        )

        assert derived.supported_features == ()
        assert derived.host_model == ""
        assert derived.has_tsc_counter is False

    def test_sev_es_requires_sev(self):
        """Test the derived facts reject SEV-ES without SEV."""
        with pytest.raises(ValidationError):
            DerivedCapabilities(sev_supported=False, sev_es_supported=True)

    def test_deduplicates_lists(self):
        """Test list fields drop duplicates and keep order."""
        derived = DerivedCapabilities(usable_models=["Penryn", "Haswell", "Penryn"])

        assert derived.usable_models == ("Penryn", "Haswell")


class TestArchRules:
    """Test architecture rule lookup."""

    @pytest.mark.parametrize(
        "tag, loads_features",
        [("amd64", True), ("x86_64", True), ("s390x", True), ("arm64", False), ("aarch64", False), ("ppc64le", False)],
    )
    def test_supported_feature_list(self, tag, loads_features):
        """Test which architectures read the supported feature list."""
        assert rules_for(tag).loads_supported_features is loads_features
