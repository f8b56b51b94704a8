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

"""Observability infrastructure for the node labeller.

This module provides structured logging and the Prometheus metrics recorded by
the reconcile loop.
"""

import logging
import sys
from typing import Any

import structlog
from prometheus_client import Counter, Histogram

from budlabeller.commons.config import app_settings


RECONCILE_TOTAL = Counter(
    "budlabeller_reconcile_total",
    "Total number of node label reconcile cycles",
    ["result"],  # patched, converged, skipped, error
)

RECONCILE_DURATION = Histogram(
    "budlabeller_reconcile_duration_seconds",
    "Node label reconcile cycle duration in seconds",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

ADVISORIES_TOTAL = Counter(
    "budlabeller_advisories_total",
    "Total number of advisory events raised against the node",
    ["reason"],
)


def _resolve_log_level(log_level: Any) -> int:
    """Map a level name or number to a stdlib logging level, falling back to INFO."""
    if isinstance(log_level, int):
        return log_level
    level = logging.getLevelName(str(log_level).upper())
    return level if isinstance(level, int) else logging.INFO


def _node_name_processor(node_name: str) -> structlog.types.Processor:
    """Stamp every record with the node being labelled."""

    def add_node_name(logger: Any, method_name: str, event_dict: dict) -> dict:
        event_dict.setdefault("node", node_name)
        return event_dict

    return add_node_name


def build_processors(debug: bool, node_name: str | None = None) -> list[structlog.types.Processor]:
    """Return the structlog processor chain.

    Debug mode renders colored console lines; otherwise records are rendered as
    JSON with exception info formatted into the record.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if node_name:
        processors.append(_node_name_processor(node_name))

    if debug:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])
    return processors


def configure_structlog(debug: bool | None = None, log_level: Any = None, node_name: str | None = None) -> None:
    """Configure structlog on top of stdlib logging.

    Args:
        debug: Render colored console output instead of JSON. Defaults to the app setting.
        log_level: Minimum log level name or number. Defaults to the app setting.
        node_name: Node name added to every record, if given.
    """
    debug = app_settings.debug if debug is None else debug
    level = _resolve_log_level(app_settings.log_level if log_level is None else log_level)

    structlog.configure(
        processors=build_processors(debug, node_name),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    # basicConfig is a no-op once the root logger has handlers
    logging.getLogger().setLevel(level)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger named after the calling module."""
    return structlog.get_logger(name)
