"""Closed set of cloud lookup tools advertised to the model, and their executor."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence, Tuple

from . import gcp
from .gcp import GcpClient

logger = logging.getLogger(__name__)


class ToolName(str, Enum):
    LIST_CLOUD_RUN_SERVICES = "list_cloud_run_services"
    LIST_GCS_BUCKETS = "list_gcs_buckets"
    LIST_FIRESTORE_COLLECTIONS = "list_firestore_collections"
    LIST_VMS = "list_vms"
    GET_PROJECT_INFO = "get_project_info"
    LIST_ENABLED_APIS = "list_enabled_apis"
    GET_IAM_POLICY = "get_iam_policy"
    GET_GCP_COSTS = "get_gcp_costs"


@dataclass(frozen=True)
class ToolDeclaration:
    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "OBJECT", "properties": {}})


Handler = Callable[[GcpClient], Awaitable[str]]

_HANDLERS: Dict[ToolName, Handler] = {
    ToolName.LIST_CLOUD_RUN_SERVICES: gcp.list_cloud_run_services,
    ToolName.LIST_GCS_BUCKETS: gcp.list_gcs_buckets,
    ToolName.LIST_FIRESTORE_COLLECTIONS: gcp.list_firestore_collections,
    ToolName.LIST_VMS: gcp.list_vms,
    ToolName.GET_PROJECT_INFO: gcp.get_project_info,
    ToolName.LIST_ENABLED_APIS: gcp.list_enabled_apis,
    ToolName.GET_IAM_POLICY: gcp.get_iam_policy,
    ToolName.GET_GCP_COSTS: gcp.get_gcp_costs,
}

DECLARATIONS: Tuple[ToolDeclaration, ...] = (
    ToolDeclaration(
        ToolName.LIST_CLOUD_RUN_SERVICES.value,
        "List all Cloud Run services in the GCP project, including their URLs and traffic routing.",
    ),
    ToolDeclaration(
        ToolName.LIST_GCS_BUCKETS.value,
        "List all Google Cloud Storage buckets in the GCP project.",
    ),
    ToolDeclaration(
        ToolName.LIST_FIRESTORE_COLLECTIONS.value,
        "List all top-level Firestore collections in the GCP project.",
    ),
    ToolDeclaration(
        ToolName.LIST_VMS.value,
        "List all Compute Engine virtual machine instances across all zones.",
    ),
    ToolDeclaration(
        ToolName.GET_PROJECT_INFO.value,
        "Get basic information about the GCP project: name, number, state, creation date.",
    ),
    ToolDeclaration(
        ToolName.LIST_ENABLED_APIS.value,
        "List all enabled Google Cloud APIs on the project.",
    ),
    ToolDeclaration(
        ToolName.GET_IAM_POLICY.value,
        "Get the IAM policy for the GCP project, showing all role bindings.",
    ),
    ToolDeclaration(
        ToolName.GET_GCP_COSTS.value,
        "Get GCP billing information including the billing account and any "
        "configured budgets with their current spend.",
    ),
)


def _check_tables() -> None:
    members = set(ToolName)
    if set(_HANDLERS) != members:
        raise RuntimeError(f"tool handler table out of sync: {sorted(members ^ set(_HANDLERS))}")
    declared = [d.name for d in DECLARATIONS]
    if sorted(declared) != sorted(m.value for m in members):
        raise RuntimeError(f"tool declarations out of sync: {declared}")


_check_tables()


class ToolRegistry:
    """Dispatches model tool calls to their handlers.

    ``execute`` never raises: unknown names, handler failures and timeouts all
    come back as text the model can read and recover from.
    """

    def __init__(
        self,
        client: GcpClient,
        *,
        timeout: Optional[float] = 20.0,
        handlers: Optional[Mapping[ToolName, Handler]] = None,
    ) -> None:
        self.client = client
        self.timeout = timeout
        self._handlers = dict(_HANDLERS)
        if handlers:
            self._handlers.update(handlers)

    def declarations(self) -> Sequence[ToolDeclaration]:
        return DECLARATIONS

    async def execute(self, name: str, args: Optional[Mapping[str, Any]] = None) -> str:
        try:
            tool = ToolName(name)
        except ValueError:
            logger.warning("Model requested unknown tool %r", name)
            return f"Unknown tool: {name}"

        # Every declared tool takes no arguments; anything the model sends is ignored.
        logger.info("Executing tool %s args=%s", tool.value, dict(args or {}))
        try:
            return await asyncio.wait_for(self._handlers[tool](self.client), self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %ss", tool.value, self.timeout)
            return f"Error running {tool.value}: timed out after {self.timeout}s"
        except Exception as e:
            logger.exception("Tool %s raised", tool.value)
            return f"Error running {tool.value}: {e}"

    async def aclose(self) -> None:
        await self.client.aclose()
