from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Config
# -----------------------------------------------------------------------------
SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]
TIMEOUT = httpx.Timeout(connect=5.0, read=20.0, write=10.0, pool=5.0)

RUN_API = "https://run.googleapis.com/v2"
STORAGE_API = "https://storage.googleapis.com/storage/v1"
FIRESTORE_API = "https://firestore.googleapis.com/v1"
COMPUTE_API = "https://compute.googleapis.com/compute/v1"
CRM_V1_API = "https://cloudresourcemanager.googleapis.com/v1"
CRM_V3_API = "https://cloudresourcemanager.googleapis.com/v3"
SERVICE_USAGE_API = "https://serviceusage.googleapis.com/v1"
BILLING_API = "https://cloudbilling.googleapis.com/v1"
BUDGETS_API = "https://billingbudgets.googleapis.com/v1"

TokenProvider = Callable[[], Awaitable[str]]


class AdcTokenProvider:
    """Bearer tokens from Application Default Credentials, refreshed when stale."""

    def __init__(self, scopes: Optional[List[str]] = None) -> None:
        self.scopes = scopes or SCOPES
        self._credentials: Any = None

    def _token_sync(self) -> str:
        # Import lazily so the package imports without ADC configured.
        import google.auth
        from google.auth.transport.requests import Request

        if self._credentials is None:
            self._credentials, _ = google.auth.default(scopes=self.scopes)
        if not self._credentials.valid:
            self._credentials.refresh(Request())
        return self._credentials.token

    async def __call__(self) -> str:
        return await asyncio.to_thread(self._token_sync)


class GcpClient:
    """Authenticated JSON client for the Google Cloud REST APIs of one project."""

    def __init__(
        self,
        project: str,
        location: str = "us-east1",
        *,
        token_provider: Optional[TokenProvider] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: httpx.Timeout = TIMEOUT,
    ) -> None:
        self.project = project
        self.location = location
        self._token = token_provider or AdcTokenProvider()
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def request(self, method: str, url: str, **kwargs: Any) -> Any:
        if not self.project:
            raise RuntimeError("no Google Cloud project configured")
        token = await self._token()
        headers = {"Authorization": f"Bearer {token}"}
        resp = await self._http.request(method, url, headers=headers, **kwargs)
        resp.raise_for_status()
        return resp.json() if resp.content else {}

    async def get(self, url: str, **kwargs: Any) -> Any:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> Any:
        return await self.request("POST", url, **kwargs)

    async def aclose(self) -> None:
        await self._http.aclose()


def _last(path: Optional[str]) -> str:
    return (path or "").rsplit("/", 1)[-1]


def _money(amount: Optional[Dict[str, Any]]) -> float:
    amount = amount or {}
    return float(amount.get("units") or 0) + float(amount.get("nanos") or 0) / 1e9


# -----------------------------------------------------------------------------
# Tool implementations
# -----------------------------------------------------------------------------
async def list_cloud_run_services(client: GcpClient) -> str:
    try:
        data = await client.get(f"{RUN_API}/projects/{client.project}/locations/{client.location}/services")
        services = data.get("services") or []
        if not services:
            return "No Cloud Run services found."
        lines = []
        for s in services:
            traffic = ", ".join(
                f"{t.get('percent', 0)}% → {_last(t.get('revision')) or 'latest'}"
                for t in s.get("traffic") or []
            )
            line = f"• {_last(s.get('name'))} — {s.get('uri') or 'no URL'}"
            lines.append(f"{line} ({traffic})" if traffic else line)
        return "\n".join(lines)
    except Exception as e:
        return f"Error listing Cloud Run services: {e}"


async def list_gcs_buckets(client: GcpClient) -> str:
    try:
        data = await client.get(f"{STORAGE_API}/b", params={"project": client.project})
        buckets = data.get("items") or []
        if not buckets:
            return "No GCS buckets found."
        return "\n".join(f"• {b['name']} ({b.get('location') or 'unknown location'})" for b in buckets)
    except Exception as e:
        return f"Error listing GCS buckets: {e}"


async def list_firestore_collections(client: GcpClient) -> str:
    try:
        url = f"{FIRESTORE_API}/projects/{client.project}/databases/(default)/documents:listCollectionIds"
        data = await client.post(url, json={})
        ids = data.get("collectionIds") or []
        if not ids:
            return "No Firestore collections found."
        return "\n".join(f"• {c}" for c in ids)
    except Exception as e:
        return f"Error listing Firestore collections: {e}"


async def list_vms(client: GcpClient) -> str:
    try:
        data = await client.get(f"{COMPUTE_API}/projects/{client.project}/aggregated/instances")
        lines = []
        for scope in (data.get("items") or {}).values():
            for vm in scope.get("instances") or []:
                lines.append(f"• {vm['name']} — {vm.get('status')} ({_last(vm.get('zone'))})")
        return "\n".join(lines) if lines else "No Compute Engine VMs found."
    except Exception as e:
        return f"Error listing VMs: {e}"


async def get_project_info(client: GcpClient) -> str:
    try:
        data = await client.get(f"{CRM_V3_API}/projects/{client.project}")
        return "\n".join([
            f"• Project ID: {data.get('projectId')}",
            f"• Display name: {data.get('displayName')}",
            f"• Project number: {_last(data.get('name'))}",
            f"• State: {data.get('state')}",
            f"• Created: {data.get('createTime')}",
        ])
    except Exception as e:
        return f"Error getting project info: {e}"


async def list_enabled_apis(client: GcpClient) -> str:
    try:
        data = await client.get(
            f"{SERVICE_USAGE_API}/projects/{client.project}/services",
            params={"filter": "state:ENABLED", "pageSize": 100},
        )
        apis = [f"• {_last(s.get('name'))}" for s in data.get("services") or []]
        return "\n".join(apis) if apis else "No enabled APIs found."
    except Exception as e:
        return f"Error listing enabled APIs: {e}"


async def get_iam_policy(client: GcpClient) -> str:
    try:
        data = await client.post(f"{CRM_V1_API}/projects/{client.project}:getIamPolicy", json={})
        bindings = [
            f"• {b['role']}\n  {', '.join(b.get('members') or [])}"
            for b in data.get("bindings") or []
            if "serviceAgent" not in b.get("role", "")
        ]
        return "\n".join(bindings) if bindings else "No IAM bindings found."
    except Exception as e:
        return f"Error getting IAM policy: {e}"


async def get_gcp_costs(client: GcpClient) -> str:
    try:
        info = await client.get(f"{BILLING_API}/projects/{client.project}/billingInfo")
        if not info.get("billingEnabled"):
            return "Billing is not enabled on this project."

        account = info.get("billingAccountName")
        data = await client.get(f"{BUDGETS_API}/{account}/budgets")
        lines = [f"Billing account: {account}"]

        budgets = data.get("budgets") or []
        if not budgets:
            lines.append("\nNo budgets configured. Set up a budget in the GCP console to track spend.")
            return "\n".join(lines)

        lines.append("\nBudgets & current spend:")
        for b in budgets:
            spend = b.get("currentSpend")
            spent = f"${_money(spend):.2f}" if spend else "unknown"
            amount = b.get("amount") or {}
            if amount.get("specifiedAmount"):
                # Budgets are whole currency units; nanos are ignored.
                budget = f"${float(amount['specifiedAmount'].get('units') or 0):.2f}"
            elif amount.get("lastPeriodAmount") is not None:
                budget = "last period amount"
            else:
                budget = "unknown"
            lines.append(f"• {b.get('displayName') or 'Unnamed budget'}: {spent} spent of {budget} budget")
        return "\n".join(lines)
    except Exception as e:
        return f"Error fetching cost data: {e}"
