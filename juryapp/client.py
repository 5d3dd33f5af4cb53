"""
HTTP client for jurors and administrators.

Reads are synchronous round-trips and raise ReadFailed on any failure.
Writes (append, save_draft) are fire-and-forget: the response is not read
and failures are swallowed. Convergence comes from the scheduler re-appending
the full local state periodically, not from retrying individual calls.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx

from .credentials import VerifyResult
from .errors import ReadFailed
from .identity import Identity
from .records import EvaluationRecord

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class JuryClient:
    def __init__(
        self,
        deployment_secret: str,
        base_url: str = "",
        http: Optional[httpx.Client] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.http = http or httpx.Client(base_url=base_url, timeout=timeout)
        self.headers = {"X-Deployment-Secret": deployment_secret}
        self.session_token: str = ""

    # -----------------------
    # plumbing
    # -----------------------
    def _read(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        headers = {**self.headers, **kwargs.pop("headers", {})}
        try:
            res = self.http.request(method, url, headers=headers, **kwargs)
            res.raise_for_status()
            return res.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ReadFailed(f"{method} {url} failed: {e}") from e

    def _write(self, method: str, url: str, **kwargs) -> None:
        headers = {**self.headers, **kwargs.pop("headers", {})}
        try:
            self.http.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.debug("Write %s %s dropped: %s", method, url, e)

    def _session(self) -> Dict[str, str]:
        return {"X-Session-Token": self.session_token}

    # -----------------------
    # identity + PIN
    # -----------------------
    def check_identity(self, identity_id: str) -> bool:
        return bool(self._read("GET", f"/api/identity/{identity_id}")["exists"])

    def issue_pin(self, identity: Identity) -> str:
        body = {"id": identity.id, "displayName": identity.display_name, "organization": identity.organization}
        return str(self._read("POST", "/api/pin/issue", json=body)["pin"])

    def verify_pin(self, identity_id: str, pin: str) -> VerifyResult:
        data = self._read("POST", "/api/pin/verify", json={"id": identity_id, "pin": pin})
        result = VerifyResult(
            valid=bool(data["valid"]),
            locked=bool(data["locked"]),
            attempts_left=int(data["attemptsLeft"]),
            session_token=data.get("sessionToken"),
        )
        if result.valid and result.session_token:
            self.session_token = result.session_token
        return result

    # -----------------------
    # records
    # -----------------------
    def list_my_records(self, identity_id: str) -> List[Dict[str, Any]]:
        return self._read("GET", f"/api/records/{identity_id}", headers=self._session())["records"]

    def count_finalized(self, identity_id: str) -> int:
        return int(self._read("GET", f"/api/records/{identity_id}/finalized", headers=self._session())["count"])

    def append(self, records: Iterable[EvaluationRecord]) -> None:
        payload = [r.to_dict() for r in records]
        if not payload:
            return
        self._write("POST", "/api/records", json={"records": payload, "sessionToken": self.session_token})

    def reopen(self, identity_id: str) -> int:
        return int(self._read("POST", f"/api/records/{identity_id}/reopen", headers=self._session())["reopened"])

    # -----------------------
    # drafts
    # -----------------------
    def save_draft(self, identity_id: str, draft: Dict[str, Any]) -> None:
        self._write("PUT", f"/api/drafts/{identity_id}", json={"draft": draft}, headers=self._session())

    def load_draft(self, identity_id: str) -> Optional[Dict[str, Any]]:
        data = self._read("GET", f"/api/drafts/{identity_id}", headers=self._session())
        return data.get("draft") if data.get("found") else None

    def delete_draft(self, identity_id: str) -> None:
        self._write("DELETE", f"/api/drafts/{identity_id}", headers=self._session())

    # -----------------------
    # admin
    # -----------------------
    def reset_credential(self, identity_id: str, admin_secret: str, forget_pin: bool = False) -> bool:
        body = {"id": identity_id, "adminSecret": admin_secret, "forgetPin": forget_pin}
        return bool(self._read("POST", "/api/admin/reset", json=body)["ok"])

    def export_all(self, admin_secret: str, reconciled: bool = True) -> List[Dict[str, Any]]:
        params = {"reconciled": "true" if reconciled else "false"}
        return self._read("GET", "/api/admin/export", params=params,
                          headers={"X-Admin-Secret": admin_secret})["records"]
