from __future__ import annotations

import logging
import secrets
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from .config import Rubric, Settings, get_settings, load_rubric
from .credentials import CredentialStore
from .db import init_db, sha256
from .drafts import DraftStore
from .errors import AlreadyIssued, InvalidSession, NotIssued
from .identity import make_identity, resolve
from .lifecycle import ReopenWindows, conform, gate, reopen
from .log import setup_logging
from .ranking import results_csv, summarize
from .reconcile import reconcile, sorted_states
from .records import EvaluationRecord, RecordFilter, SqliteRecordLog, Status

logger = logging.getLogger(__name__)


# -----------------------
# Request bodies
# -----------------------
class ResolveIn(BaseModel):
    displayName: str
    organization: str


class IssueIn(BaseModel):
    id: str
    displayName: str
    organization: str


class VerifyIn(BaseModel):
    id: str
    pin: str


class ResetIn(BaseModel):
    id: str
    adminSecret: str
    forgetPin: bool = False


class RecordIn(BaseModel):
    identityId: str
    groupId: int
    timestamp: Any = None
    criterionScores: Dict[str, Any] = Field(default_factory=dict)
    comment: str = ""
    status: str = ""
    displayName: str = ""
    organization: str = ""


class AppendIn(BaseModel):
    records: List[RecordIn]
    sessionToken: str = ""


class DraftIn(BaseModel):
    draft: Dict[str, Any]


def _secret_ok(given: str, expected: str) -> bool:
    if not expected:
        return False
    return secrets.compare_digest(sha256(given or ""), sha256(expected))


def create_app(settings: Optional[Settings] = None, rubric: Optional[Rubric] = None) -> FastAPI:
    settings = settings or get_settings()
    rubric = rubric or load_rubric(settings.rubric_path)
    setup_logging(settings.log_level, settings.log_dir)

    db_path = settings.db_path
    log = SqliteRecordLog(db_path)
    creds = CredentialStore(
        db_path,
        pin_length=settings.pin_length,
        max_attempts=settings.max_pin_attempts,
        session_ttl_minutes=settings.session_ttl_minutes,
    )
    windows = ReopenWindows(db_path, settings.reopen_window_minutes)
    drafts = DraftStore(db_path)

    def require_deployment(x_deployment_secret: str = Header("")) -> None:
        if not _secret_ok(x_deployment_secret, settings.deployment_secret):
            raise HTTPException(status_code=403, detail="Invalid deployment secret.")

    def require_admin(admin_secret: str) -> None:
        if not _secret_ok(admin_secret, settings.admin_secret):
            raise HTTPException(status_code=403, detail="Invalid admin secret.")

    def current_states(identity_id: str):
        return reconcile(log.query(RecordFilter(identity_id=identity_id)), rubric)

    app = FastAPI(title="Jury Evaluation", dependencies=[Depends(require_deployment)])
    app.state.settings = settings
    app.state.rubric = rubric
    app.state.log = log
    app.state.credentials = creds

    @app.on_event("startup")
    def _startup():
        init_db(db_path)
        if not settings.deployment_secret:
            logger.warning("JURY_DEPLOYMENT_SECRET is empty: every request will be rejected.")
        if not settings.admin_secret:
            logger.warning("JURY_ADMIN_SECRET is empty: admin routes are disabled.")

    @app.exception_handler(AlreadyIssued)
    def _already_issued(request: Request, exc: AlreadyIssued):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(NotIssued)
    def _not_issued(request: Request, exc: NotIssued):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidSession)
    def _invalid_session(request: Request, exc: InvalidSession):
        return JSONResponse(status_code=401, content={"detail": str(exc)})

    # -----------------------
    # Routes: identity + PIN
    # -----------------------
    @app.get("/api/info")
    def info():
        return rubric.to_dict()

    @app.post("/api/identity/resolve")
    def resolve_identity(body: ResolveIn):
        return {"id": resolve(body.displayName, body.organization)}

    @app.get("/api/identity/{identity_id}")
    def check_identity(identity_id: str):
        return {"exists": creds.exists(identity_id)}

    @app.post("/api/pin/issue")
    def issue_pin(body: IssueIn):
        identity = make_identity(body.displayName, body.organization)
        if identity.id != body.id:
            raise HTTPException(status_code=400, detail="Identity does not match name and organization.")
        return {"pin": creds.issue(identity)}

    @app.post("/api/pin/verify")
    def verify_pin(body: VerifyIn):
        return creds.verify(body.id, body.pin).to_dict()

    # -----------------------
    # Routes: records
    # -----------------------
    @app.get("/api/records/{identity_id}")
    def list_my_records(identity_id: str, x_session_token: str = Header("")):
        creds.check_session(identity_id, x_session_token)
        states = sorted_states(current_states(identity_id))
        return {"records": [s.to_dict() for s in states]}

    @app.get("/api/records/{identity_id}/finalized")
    def count_finalized(identity_id: str, x_session_token: str = Header("")):
        creds.check_session(identity_id, x_session_token)
        states = current_states(identity_id).values()
        return {"count": sum(1 for s in states if s.status is Status.ALL_SUBMITTED)}

    @app.post("/api/records")
    def append_records(body: AppendIn):
        records = [EvaluationRecord.from_dict(r.model_dump()) for r in body.records]
        if not records:
            return {"ok": True, "appended": 0, "skipped": 0}

        owners = {r.identity_id for r in records}
        if len(owners) != 1:
            raise HTTPException(status_code=403, detail="Records must belong to a single identity.")
        identity_id = owners.pop()
        creds.check_session(identity_id, body.sessionToken)

        records, rejected = conform(records, rubric)
        accepted, skipped = gate(records, current_states(identity_id), windows.is_active(identity_id))
        log.append(accepted)
        skipped += rejected
        if skipped:
            logger.info("Skipped %d record(s) for %s", len(skipped), identity_id)
        return {"ok": True, "appended": len(accepted), "skipped": len(skipped)}

    @app.post("/api/records/{identity_id}/reopen")
    def reopen_mine(identity_id: str, x_session_token: str = Header("")):
        creds.check_session(identity_id, x_session_token)
        return {"ok": True, "reopened": reopen(log, windows, identity_id, rubric)}

    # -----------------------
    # Routes: drafts
    # -----------------------
    @app.put("/api/drafts/{identity_id}")
    def save_draft(identity_id: str, body: DraftIn, x_session_token: str = Header("")):
        creds.check_session(identity_id, x_session_token)
        return {"ok": True, "updatedAt": drafts.save(identity_id, body.draft)}

    @app.get("/api/drafts/{identity_id}")
    def load_draft(identity_id: str, x_session_token: str = Header("")):
        creds.check_session(identity_id, x_session_token)
        found = drafts.load(identity_id)
        if found is None:
            return {"found": False}
        return {"found": True, **found}

    @app.delete("/api/drafts/{identity_id}")
    def delete_draft(identity_id: str, x_session_token: str = Header("")):
        creds.check_session(identity_id, x_session_token)
        drafts.delete(identity_id)
        return {"ok": True}

    # -----------------------
    # Routes: admin
    # -----------------------
    @app.post("/api/admin/reset")
    def reset_credential(body: ResetIn):
        require_admin(body.adminSecret)
        creds.reset(body.id, forget_pin=body.forgetPin)
        return {"ok": True, "reopened": reopen(log, windows, body.id, rubric)}

    @app.get("/api/admin/export")
    def export_all(reconciled: bool = True, x_admin_secret: str = Header("")):
        require_admin(x_admin_secret)
        records = log.query()
        if not reconciled:
            return {"records": [r.to_dict() for r in records]}
        return {"records": [s.to_dict() for s in sorted_states(reconcile(records, rubric))]}

    @app.get("/api/admin/summary")
    def summary(final_only: Optional[bool] = None, x_admin_secret: str = Header("")):
        require_admin(x_admin_secret)
        states = reconcile(log.query(), rubric).values()
        return summarize(
            states,
            rubric,
            final_only=settings.final_only if final_only is None else final_only,
            outlier_threshold=settings.outlier_threshold,
        )

    @app.get("/api/admin/results.csv")
    def download_results(final_only: Optional[bool] = None, x_admin_secret: str = Header("")):
        require_admin(x_admin_secret)
        states = reconcile(log.query(), rubric).values()
        content = results_csv(states, rubric, settings.final_only if final_only is None else final_only)
        return Response(
            content=content,
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="jury_results.csv"'},
        )

    return app


app = create_app()
