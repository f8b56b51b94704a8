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

"""Cluster-wide configuration values read by the labeller."""

from threading import Lock
from typing import Callable, Dict, Mapping, Optional

from ..commons.constants import DEFAULT_OBSOLETE_CPU_MODELS
from ..commons.observability import get_logger


logger = get_logger(__name__)


class ClusterConfig:
    """Holds the obsolete CPU models and notifies a listener when they change."""

    def __init__(self, obsolete_cpu_models: Optional[Mapping[str, bool]] = None):
        """Initialize with the obsolete CPU models, defaulting to the built-in list."""
        if obsolete_cpu_models is None:
            obsolete_cpu_models = {model: True for model in DEFAULT_OBSOLETE_CPU_MODELS}
        self._obsolete_cpu_models: Dict[str, bool] = dict(obsolete_cpu_models)
        self._callback: Optional[Callable[[], None]] = None
        self._lock = Lock()

    def get_obsolete_cpu_models(self) -> Dict[str, bool]:
        """Return a copy of the obsolete CPU models."""
        with self._lock:
            return dict(self._obsolete_cpu_models)

    def set_obsolete_cpu_models(self, obsolete_cpu_models: Mapping[str, bool]) -> None:
        """Replace the obsolete CPU models and fire the change callback if they differ."""
        with self._lock:
            changed = dict(obsolete_cpu_models) != self._obsolete_cpu_models
            self._obsolete_cpu_models = dict(obsolete_cpu_models)
            callback = self._callback

        if changed:
            logger.info("Cluster configuration changed", obsolete_cpu_models=sorted(obsolete_cpu_models))
            if callback is not None:
                callback()

    def set_config_modified_callback(self, callback: Callable[[], None]) -> None:
        """Register the function called after each configuration change."""
        with self._lock:
            self._callback = callback
