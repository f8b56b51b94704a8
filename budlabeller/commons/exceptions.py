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

"""Defines custom exceptions to handle specific error cases gracefully."""


class LabellerException(Exception):
    """Base exception for node labeller errors."""

    def __init__(self, message="Node labeller error occurred"):
        """Initialize LabellerException."""
        self.message = message
        super().__init__(self.message)


class ParseError(LabellerException):
    """Raise when a capability descriptor is malformed or has an unexpected structure."""

    def __init__(self, message="Failed to parse capability descriptor"):
        """Initialize ParseError."""
        super().__init__(message)


class DeriveError(LabellerException):
    """Raise when a well-formed capability descriptor lacks the facts needed for labelling."""

    def __init__(self, message="Failed to derive host capabilities"):
        """Initialize DeriveError."""
        super().__init__(message)


class ProbeError(LabellerException):
    """Raise when the realtime capability query fails."""

    def __init__(self, message="Realtime capability probe failed"):
        """Initialize ProbeError."""
        super().__init__(message)


class ResourceFetchError(LabellerException):
    """Raise when the node resource cannot be read."""

    def __init__(self, message: str, status_code: int | None = None):
        """Initialize the ResourceFetchError with a message."""
        self.status_code = status_code
        super().__init__(message)

    def __str__(self):
        """Return a string representation of the fetch error."""
        return f"ResourceFetchError: {self.message}"


class ResourceWriteError(LabellerException):
    """Raise when the node resource cannot be patched."""

    def __init__(self, message: str, status_code: int | None = None):
        """Initialize the ResourceWriteError with a message."""
        self.status_code = status_code
        super().__init__(message)

    def __str__(self):
        """Return a string representation of the write error."""
        return f"{type(self).__name__}: {self.message}"


class ResourceConflictError(ResourceWriteError):
    """Raise when the node labels changed between read and write."""


class KubernetesException(LabellerException):
    """Base exception for kubernetes client setup errors."""

    def __init__(self, message="Kubernetes error occurred"):
        """Initialize KubernetesException."""
        super().__init__(message)
