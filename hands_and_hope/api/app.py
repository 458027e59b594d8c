"""
Hands and Hope — Caregiver Access API.

FastAPI application providing:
- Caregiver grant management for account owners (invite, edit, revoke)
- Caregiver login and permission summary
- Access evaluation and checked caregiver actions
- Activity log (per grant, paginated; per owner, filterable)
- Platform-admin overview of accounts with caregivers, platform-wide recent
  activity and per-caregiver activity across accounts

Domain errors are mapped to HTTP statuses in exception handlers. Nothing
falls back to sample data: if the database cannot be reached, the error
surfaces.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from hands_and_hope.access.errors import (
    ActivityLogError,
    CaregiverAccessError,
    ConflictError,
    DenyError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from hands_and_hope.access.evaluator import AccessEvaluator
from hands_and_hope.access.grants import GrantManager
from hands_and_hope.access.identity import CredentialIssuer, OwnerAccountDirectory
from hands_and_hope.access.pipeline import CaregiverActionPipeline
from hands_and_hope.access.presets import capability_catalogue, preset_catalogue
from hands_and_hope.config import settings
from hands_and_hope.ledger.database import Database
from hands_and_hope.ledger.service import ActivityLogger

logger = logging.getLogger(__name__)


# ── Pydantic request models ───────────────────────────────────


class _Request(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateCaregiverRequest(_Request):
    owner_account_id: str
    caregiver_email: str
    caregiver_name: str
    relationship_type: str
    relationship_details: str | None = None
    permission_level: str
    permissions: dict[str, Any] | None = None


class UpdatePermissionsRequest(_Request):
    permissions: dict[str, Any]


class CaregiverActionRequest(_Request):
    action: str
    action_details: str = ""
    resource_type: str
    resource_name: str | None = None
    capability: str | None = None


# ── Service wiring ────────────────────────────────────────────


@dataclass
class CaregiverServices:
    """Services shared by every request."""

    database: Database
    grants: GrantManager
    evaluator: AccessEvaluator
    activity: ActivityLogger
    pipeline: CaregiverActionPipeline


def build_services(
    database: Database,
    credential_issuer: CredentialIssuer | None = None,
    owner_directory: OwnerAccountDirectory | None = None,
) -> CaregiverServices:
    evaluator = AccessEvaluator(database)
    activity = ActivityLogger(database)
    return CaregiverServices(
        database=database,
        grants=GrantManager(database, credential_issuer, owner_directory),
        evaluator=evaluator,
        activity=activity,
        pipeline=CaregiverActionPipeline(evaluator, activity),
    )


def get_services(request: Request) -> CaregiverServices:
    return request.app.state.services


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


# Most specific first: UnknownPresetError is a ValidationError
_ERROR_STATUS: list[tuple[type[CaregiverAccessError], int]] = [
    (ValidationError, 400),
    (DenyError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (InvalidStateError, 409),
    (ActivityLogError, 503),
]


def _status_for(exc: CaregiverAccessError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


# ── Application factory ───────────────────────────────────────


def create_app(
    database: Database | None = None,
    credential_issuer: CredentialIssuer | None = None,
    owner_directory: OwnerAccountDirectory | None = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        database: Database to serve from. Defaults to one built from
            settings at startup.
        credential_issuer: Passed to the grant manager.
        owner_directory: Passed to the grant manager.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = database or Database(settings.database_url_sync)
        db.initialize()
        app.state.services = build_services(db, credential_issuer, owner_directory)
        logger.info("Caregiver access API started")

        yield

        pipeline = app.state.services.pipeline
        written = pipeline.flush_pending()
        if written:
            logger.info("Queued activity records written at shutdown: %d", written)
        if pipeline.pending_records:
            logger.error(
                "Activity records still unwritten at shutdown: %d",
                len(pipeline.pending_records),
            )
        if database is None:
            db.dispose()
        logger.info("Caregiver access API shut down")

    app = FastAPI(
        title="Hands and Hope — Caregiver Access",
        description="Delegated caregiver access for Hands and Hope seller accounts",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.exception_handler(CaregiverAccessError)
    async def caregiver_error_handler(request: Request, exc: CaregiverAccessError):
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error("Caregiver access failure on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = [
            {"field": ".".join(str(p) for p in err["loc"] if p != "body"), "message": err["msg"]}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={
                "error": ValidationError.code,
                "message": "Request validation failed",
                "details": problems,
            },
        )

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    # ── Routes: Health & catalogue ────────────────────────────

    @app.get("/health")
    async def health(services: CaregiverServices = Depends(get_services)):
        return {"status": "ok", "database": services.database.engine.dialect.name}

    @app.get("/permission-presets")
    async def permission_presets():
        return {"presets": preset_catalogue(), "capabilities": capability_catalogue()}

    # ── Routes: Owner grant management ────────────────────────

    @app.post("/caregivers", status_code=201)
    def create_caregiver(
        req: CreateCaregiverRequest,
        services: CaregiverServices = Depends(get_services),
    ):
        grant = services.grants.create_grant(
            owner_account_id=req.owner_account_id,
            caregiver_email=req.caregiver_email,
            caregiver_name=req.caregiver_name,
            relationship_type=req.relationship_type,
            permission_level=req.permission_level,
            relationship_details=req.relationship_details,
            permissions=req.permissions,
        )
        return {"grantId": str(grant.grant_id), "status": grant.status.value}

    @app.get("/caregivers/{grant_id}")
    def get_caregiver(grant_id: str, services: CaregiverServices = Depends(get_services)):
        return _dump(services.grants.get_grant(grant_id))

    @app.put("/caregivers/{grant_id}/permissions")
    def update_permissions(
        grant_id: str,
        req: UpdatePermissionsRequest,
        x_account_id: str = Header(..., min_length=1),
        services: CaregiverServices = Depends(get_services),
    ):
        grant = services.grants.update_permissions(
            grant_id, req.permissions, acting_account_id=x_account_id
        )
        return {
            "grantId": str(grant.grant_id),
            "permissionLevel": grant.permission_level.value,
            "permissions": grant.permissions.to_wire(),
        }

    @app.delete("/caregivers/{grant_id}")
    def revoke_caregiver(
        grant_id: str,
        x_account_id: str = Header(..., min_length=1),
        services: CaregiverServices = Depends(get_services),
    ):
        grant = services.grants.revoke(grant_id, acting_account_id=x_account_id)
        return {"grantId": str(grant.grant_id), "status": grant.status.value}

    @app.get("/accounts/{owner_account_id}/caregivers")
    def list_owner_caregivers(
        owner_account_id: str,
        include_revoked: bool = Query(default=False, alias="includeRevoked"),
        services: CaregiverServices = Depends(get_services),
    ):
        grants = services.grants.list_for_owner(owner_account_id, include_revoked=include_revoked)
        return {"caregivers": [_dump(g) for g in grants], "total": len(grants)}

    # ── Routes: Caregiver session ─────────────────────────────

    @app.post("/caregivers/{grant_id}/login")
    def caregiver_login(grant_id: str, services: CaregiverServices = Depends(get_services)):
        return _dump(services.grants.record_login(grant_id))

    @app.get("/caregivers/{grant_id}/permissions")
    def caregiver_permissions(grant_id: str, services: CaregiverServices = Depends(get_services)):
        return _dump(services.evaluator.permission_summary(grant_id))

    @app.get("/caregiver-accounts")
    def caregiver_accounts(
        email: str = Query(...),
        services: CaregiverServices = Depends(get_services),
    ):
        grants = services.grants.list_for_caregiver(email)
        return {"accounts": [_dump(g) for g in grants], "total": len(grants)}

    @app.get("/caregivers/{grant_id}/evaluate")
    def evaluate_capability(
        grant_id: str,
        capability: str = Query(...),
        services: CaregiverServices = Depends(get_services),
    ):
        return services.evaluator.evaluate(grant_id, capability).to_dict()

    @app.post("/caregivers/{grant_id}/actions", status_code=201)
    def perform_action(
        grant_id: str,
        req: CaregiverActionRequest,
        services: CaregiverServices = Depends(get_services),
    ):
        outcome = services.pipeline.perform(
            grant_id,
            action=req.action,
            action_details=req.action_details,
            resource_type=req.resource_type,
            resource_name=req.resource_name,
            capability=req.capability,
        )
        return {
            "decision": outcome.decision.to_dict(),
            "record": _dump(outcome.record) if outcome.record is not None else None,
            "queued": outcome.queued,
        }

    # ── Routes: Activity log ──────────────────────────────────

    @app.get("/caregivers/{grant_id}/activity")
    def grant_activity(
        grant_id: str,
        cursor: int | None = Query(default=None),
        limit: int | None = Query(default=None),
        services: CaregiverServices = Depends(get_services),
    ):
        return _dump(services.activity.list_for_grant(grant_id, cursor=cursor, limit=limit))

    @app.get("/accounts/{owner_account_id}/caregivers/activity")
    def owner_activity(
        owner_account_id: str,
        action: str | None = Query(default=None),
        resource_type: str | None = Query(default=None, alias="resourceType"),
        since: datetime | None = Query(default=None),
        limit: int | None = Query(default=None),
        services: CaregiverServices = Depends(get_services),
    ):
        records = services.activity.list_for_owner(
            owner_account_id,
            action=action,
            resource_type=resource_type,
            since=since,
            limit=limit,
        )
        return {"records": [_dump(r) for r in records], "total": len(records)}

    # ── Routes: Platform admin ────────────────────────────────

    @app.get("/admin/caregiver-accounts")
    def admin_caregiver_accounts(
        status: str = Query(default="all"),
        q: str | None = Query(default=None),
        services: CaregiverServices = Depends(get_services),
    ):
        accounts = services.grants.admin_overview(status=status, query=q)
        return {"accounts": [_dump(a) for a in accounts], "total": len(accounts)}

    @app.get("/admin/caregiver-activity")
    def admin_recent_activity(
        action: str | None = Query(default=None),
        resource_type: str | None = Query(default=None, alias="resourceType"),
        since: datetime | None = Query(default=None),
        limit: int | None = Query(default=None),
        services: CaregiverServices = Depends(get_services),
    ):
        records = services.activity.list_recent(
            action=action, resource_type=resource_type, since=since, limit=limit,
        )
        return {"records": [_dump(r) for r in records], "total": len(records)}

    @app.get("/admin/caregivers/{caregiver_email}/activity")
    def admin_caregiver_activity(
        caregiver_email: str,
        action: str | None = Query(default=None),
        since: datetime | None = Query(default=None),
        limit: int | None = Query(default=None),
        services: CaregiverServices = Depends(get_services),
    ):
        records = services.activity.list_for_caregiver(
            caregiver_email, action=action, since=since, limit=limit,
        )
        return {"records": [_dump(r) for r in records], "total": len(records)}


app = create_app()
