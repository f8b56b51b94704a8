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

"""Settings for the node labeller, read from the environment and an optional .env file."""

import platform
import socket
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from budlabeller.__about__ import __version__
from budlabeller.commons.constants import (
    CAPABILITIES_VOLUME_PATH,
    DEFAULT_OBSOLETE_CPU_MODELS,
    Arch,
)


load_dotenv()


class AppConfig(BaseSettings):
    """Runtime configuration for the node labeller."""

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    # App Info
    name: str = __version__.split("@")[0]
    version: str = __version__.split("@")[-1]

    # Logging
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    debug: bool = Field(False, alias="DEBUG")

    # Node
    node_name: str = Field(default_factory=socket.gethostname, alias="NODE_NAME")
    node_arch: str = Field(default_factory=platform.machine, alias="NODE_ARCH")
    kubeconfig: Optional[str] = Field(None, alias="KUBECONFIG")
    event_namespace: str = Field("default", alias="EVENT_NAMESPACE")

    # Capabilities
    capabilities_volume_path: Path = Field(Path(CAPABILITIES_VOLUME_PATH), alias="CAPABILITIES_VOLUME_PATH")
    realtime_probe_timeout: float = Field(10.0, alias="REALTIME_PROBE_TIMEOUT")
    obsolete_cpu_models: str = Field(",".join(DEFAULT_OBSOLETE_CPU_MODELS), alias="OBSOLETE_CPU_MODELS")

    # Reconcile loop
    labeller_threadiness: int = Field(1, ge=1, alias="LABELLER_THREADINESS")
    labeller_interval_seconds: float = Field(180.0, gt=0, alias="LABELLER_INTERVAL_SECONDS")
    labeller_jitter_factor: float = Field(1.2, ge=0, alias="LABELLER_JITTER_FACTOR")

    # Work queue rate limiting
    queue_base_delay_seconds: float = Field(0.005, gt=0, alias="QUEUE_BASE_DELAY_SECONDS")
    queue_max_delay_seconds: float = Field(1000.0, gt=0, alias="QUEUE_MAX_DELAY_SECONDS")
    queue_qps: float = Field(10.0, gt=0, alias="QUEUE_QPS")
    queue_burst: int = Field(100, ge=1, alias="QUEUE_BURST")

    @property
    def arch(self) -> Arch:
        """Architecture tag of the node."""
        return Arch.from_tag(self.node_arch)

    def obsolete_cpu_models_map(self) -> Dict[str, bool]:
        """Return the obsolete CPU models as a name to flag mapping."""
        return {model.strip(): True for model in self.obsolete_cpu_models.split(",") if model.strip()}


app_settings = AppConfig()
