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

"""Realtime scheduling capability probe.

A node can run realtime workloads when the kernel lets realtime tasks use the
CPU without a runtime limit, i.e. `kernel.sched_rt_runtime_us` is -1.
"""

import subprocess
from typing import Sequence

from ..commons.constants import KERNEL_SCHED_RT_RUNTIME_SETTING
from ..commons.exceptions import ProbeError
from ..commons.observability import get_logger


logger = get_logger(__name__)


class RealtimeProbe:
    """Queries the kernel realtime scheduling budget through sysctl."""

    def __init__(self, command: Sequence[str] = ("sysctl", KERNEL_SCHED_RT_RUNTIME_SETTING), timeout: float = 10.0):
        """Initialize the probe with the query command and its timeout in seconds."""
        self.command = tuple(command)
        self.timeout = timeout
        self.expected_output = f"{KERNEL_SCHED_RT_RUNTIME_SETTING} = -1"

    def probe(self) -> bool:
        """Run the query and check that the realtime runtime is unlimited.

        Raises:
            ProbeError: If the command cannot run, times out, exits non-zero
                or reports any other runtime budget.
        """
        try:
            result = subprocess.run(
                self.command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=self.timeout,
                check=False,
                text=True,
            )
        except (OSError, subprocess.TimeoutExpired) as err:
            raise ProbeError(f"Failed to run {' '.join(self.command)}: {err}") from err

        if result.returncode != 0:
            raise ProbeError(
                f"{' '.join(self.command)} exited with status {result.returncode}: {result.stdout.strip()}"
            )
        output = result.stdout.strip("\n")
        if output != self.expected_output:
            raise ProbeError(f"unexpected output {result.stdout!r}")
        return True

    def is_capable(self) -> bool:
        """Whether the node can run realtime workloads; probe failures count as not capable."""
        try:
            return self.probe()
        except ProbeError as err:
            logger.error(
                "failed to identify if a node is capable of running realtime workloads", error=err.message
            )
            return False
