"""
Google Sheets Client
Reads the legacy store through the portal's Apps Script web app
"""

from typing import Any, Dict, List, Optional
import httpx
import structlog

from app.config import settings
from app.exceptions import UpstreamUnavailable
from app.services.monitoring.circuit_breakers import get_sheets_breaker, CircuitBreakerError

logger = structlog.get_logger(__name__)


class SheetsClient:
    """
    Client for the Apps Script web app that fronts the report spreadsheet.

    Protocol (POST JSON, response JSON):
    - {"action": "ping"} -> {"success": true, "spreadsheet": "<title>"}
    - {"action": "listRecords", "table": ..., "batch"?: ..., "program"?: ...}
      -> {"success": true, "records": [{...}, ...]}
    Failures come back as {"success": false, "error": "..."}.

    All calls go through the "sheets" circuit breaker. Every failure is
    raised as UpstreamUnavailable("sheets", ...).
    """

    name = "sheets"

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url or settings.sheets_api_url
        self.token = token or settings.sheets_api_token
        self.timeout = timeout or settings.sheets_timeout_seconds
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def ping(self) -> Dict[str, Any]:
        """
        Check that the web app answers.

        Returns:
            {"spreadsheet": title reported by the web app}
        """
        response = self._call("ping")
        return {"spreadsheet": response.get("spreadsheet", "Unknown")}

    def fetch_records(
        self,
        table: str,
        batch: Optional[str] = None,
        program: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        All rows of a logical table (sheet tab), optionally filtered.

        Args:
            table: Logical table name, mapped to a tab by the web app
            batch: Only rows for this batch
            program: Only rows for this program

        Returns:
            List of row dicts keyed by column header
        """
        response = self._call("listRecords", table=table, batch=batch, program=program)
        records = response.get("records")

        if not isinstance(records, list) or not all(isinstance(r, dict) for r in records):
            raise UpstreamUnavailable(self.name, f"Malformed listRecords response for '{table}'")

        logger.info("sheets_records_fetched", table=table, batch=batch, program=program, count=len(records))
        return records

    def _call(self, action: str, **params) -> Dict[str, Any]:
        if not self.configured:
            raise UpstreamUnavailable(self.name, "Google Sheets web app not configured")

        payload = {"action": action}
        payload.update({key: value for key, value in params.items() if value is not None})
        if self.token:
            payload["token"] = self.token

        try:
            body = get_sheets_breaker().call(self._post, payload)
        except CircuitBreakerError as e:
            raise UpstreamUnavailable(self.name, "Google Sheets circuit open", details=str(e)) from e
        except httpx.HTTPError as e:
            logger.warning("sheets_request_failed", action=action, error=str(e))
            raise UpstreamUnavailable(self.name, f"Google Sheets request failed: {e}") from e
        except ValueError as e:
            raise UpstreamUnavailable(self.name, "Google Sheets returned invalid JSON") from e

        if not isinstance(body, dict) or not body.get("success"):
            error = body.get("error") if isinstance(body, dict) else None
            raise UpstreamUnavailable(self.name, error or f"Google Sheets action '{action}' failed")

        return body

    def _post(self, payload: Dict[str, Any]) -> Any:
        # Apps Script answers with a redirect to script.googleusercontent.com
        with httpx.Client(timeout=self.timeout, follow_redirects=True, transport=self.transport) as client:
            response = client.post(self.base_url, json=payload)
            response.raise_for_status()
            return response.json()
