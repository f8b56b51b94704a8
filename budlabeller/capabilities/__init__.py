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

"""Host capability parsing and derivation."""

from .deriver import DerivedCapabilities, derive_capabilities
from .manager import NodeCapabilitiesManager
from .realtime import RealtimeProbe


__all__ = [
    "DerivedCapabilities",
    "NodeCapabilitiesManager",
    "RealtimeProbe",
    "derive_capabilities",
]
