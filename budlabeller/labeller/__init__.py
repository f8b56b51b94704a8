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

"""Node label reconciliation."""

from .cluster_config import ClusterConfig
from .controller import NodeLabeller, build_node_labeller
from .labels import MANAGED_LABEL_DOMAIN, build_labels


__all__ = [
    "ClusterConfig",
    "MANAGED_LABEL_DOMAIN",
    "NodeLabeller",
    "build_labels",
    "build_node_labeller",
]
