"""Base HTTP Client for the Portal Jobs admin API"""

from typing import Any

import httpx
from rich.console import Console
from rich.panel import Panel

console = Console()


class PortalJobsError(Exception):
    """Base exception for Portal Jobs API errors"""

    pass


class APIClient:
    """HTTP client for the Portal Jobs admin API"""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = 30,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(
            base_url=self.base_url, timeout=timeout, transport=transport
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.client.close()

    def _handle_response(self, response: httpx.Response) -> Any:
        """Handle API response and unwrap the envelope"""
        try:
            data = response.json()
        except ValueError:
            console.print(f"[red]Failed to parse response: {response.text}[/red]")
            raise PortalJobsError(
                f"Invalid JSON response: {response.status_code}"
            ) from None

        if response.status_code >= 400:
            error_msg = data.get("error", {}).get("message", "Unknown error")
            console.print(Panel(f"[red]{error_msg}[/red]", title="API Error"))
            raise PortalJobsError(f"API Error {response.status_code}: {error_msg}")

        if not data.get("ok", False):
            error_msg = data.get("error", {}).get("message", "Request failed")
            console.print(Panel(f"[red]{error_msg}[/red]", title="Request Failed"))
            raise PortalJobsError(error_msg)

        return data.get("data", {})

    def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """Make GET request"""
        try:
            response = self.client.get(f"/v1{path}", params=params)
        except httpx.RequestError as e:
            console.print(f"[red]Connection error: {e}[/red]")
            raise PortalJobsError(f"Connection failed: {e}") from None
        return self._handle_response(response)

    def post(self, path: str, json: dict[str, Any] | None = None) -> Any:
        """Make POST request"""
        try:
            response = self.client.post(f"/v1{path}", json=json)
        except httpx.RequestError as e:
            console.print(f"[red]Connection error: {e}[/red]")
            raise PortalJobsError(f"Connection failed: {e}") from None
        return self._handle_response(response)
