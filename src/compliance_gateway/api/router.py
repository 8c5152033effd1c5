"""API router for compliance-gateway.

All endpoints are registered here and included in main.py under the /api/v1
prefix. Routes are thin; all business logic lives in the service layer.

Endpoints:
- POST        /compliance/evaluate                      - Run a compliance evaluation
- GET         /compliance/recent                        - Recent evaluations across applications
- GET         /compliance/blocked                       - Denied evaluations
- GET         /compliance/application/{application_id}  - An application's recent evaluations
- GET         /compliance/{evaluation_id}               - Get an evaluation by ID
- GET         /audit/{audit_id}                         - Get audit record by ID
- GET         /audit/evaluation/{evaluation_id}         - Get audit record for an evaluation
- GET         /audit/application/{application_id}       - Page through an application's audit history
- GET         /audit/blocked                            - Recent denied decisions
- GET         /audit/critical-vulnerabilities           - Recent records with critical findings
- GET         /audit/risk-tier/{risk_tier}              - Records for a risk tier
- GET         /audit/statistics                         - Aggregate statistics
- POST        /applications                             - Register an application
- GET         /applications                             - List applications
- GET         /applications/by-name/{name}              - Get an application by name
- GET         /applications/{application_id}            - Get an application
- PATCH       /applications/{application_id}/owner      - Transfer ownership
- POST        /applications/{application_id}/deactivate - Deactivate an application
- POST        /applications/{application_id}/environments               - Add an environment
- PATCH       /applications/{application_id}/environments/{name}        - Update an environment
- POST        /applications/{application_id}/environments/{name}/deactivate - Deactivate an environment
- GET         /health/policy-engine                     - Policy engine health
"""

import uuid
from datetime import datetime, timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse

from compliance_gateway.adapters.audit_store import AuditLogRepository
from compliance_gateway.adapters.repositories import ApplicationRepository, ComplianceEvaluationRepository
from compliance_gateway.api.schemas import (
    ApplicationListResponse,
    ApplicationOwnerUpdateRequest,
    ApplicationRegisterRequest,
    ApplicationResponse,
    AuditLogListResponse,
    AuditLogResponse,
    AuditStatisticsResponse,
    EnvironmentCreateRequest,
    EnvironmentResponse,
    EnvironmentUpdateRequest,
    ErrorResponse,
    EvaluateRequest,
    EvaluationListResponse,
    EvaluationRecordResponse,
    EvaluationResponse,
    PolicyEngineHealthResponse,
)
from compliance_gateway.core.interfaces import IPolicyEngineClient
from compliance_gateway.core.services import (
    ApplicationRegistryService,
    AuditQueryService,
    EvaluationQueryService,
    EvaluationService,
)
from compliance_gateway.errors import ComplianceGatewayError, Err
from compliance_gateway.observability import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["compliance"])

_ERROR_STATUS: dict[str, int] = {
    "validation_error": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "engine_transport_error": status.HTTP_502_BAD_GATEWAY,
    "persistence_error": status.HTTP_500_INTERNAL_SERVER_ERROR,
}

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------


async def handle_gateway_error(request: Request, exc: ComplianceGatewayError) -> JSONResponse:
    """Translate a taxonomy error into a caller-safe JSON response."""
    status_code = _ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    logger.info(
        "Request failed",
        path=request.url.path,
        error_kind=exc.kind,
        status_code=status_code,
    )
    body = ErrorResponse(error=exc.kind, message=exc.message)
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ComplianceGatewayError, handle_gateway_error)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Dependency factories: wire repositories, services, and clients together
# ---------------------------------------------------------------------------


def get_policy_engine(request: Request) -> IPolicyEngineClient:
    """Return the policy engine client created in the lifespan handler."""
    return request.app.state.policy_engine


def get_application_repository(request: Request) -> ApplicationRepository:
    return ApplicationRepository(request.app.state.session_factory)


def get_audit_repository(request: Request) -> AuditLogRepository:
    return AuditLogRepository(request.app.state.audit_session_factory)


def get_evaluation_repository(request: Request) -> ComplianceEvaluationRepository:
    return ComplianceEvaluationRepository(request.app.state.session_factory)


def get_evaluation_service(
    request: Request,
    application_repo: Annotated[ApplicationRepository, Depends(get_application_repository)],
    evaluation_repo: Annotated[ComplianceEvaluationRepository, Depends(get_evaluation_repository)],
    audit_repo: Annotated[AuditLogRepository, Depends(get_audit_repository)],
    policy_engine: Annotated[IPolicyEngineClient, Depends(get_policy_engine)],
) -> EvaluationService:
    """Construct EvaluationService with injected repositories and adapters.

    Args:
        request: Current request, used to reach shared clients on app state.
        application_repo: Application registry repository.
        evaluation_repo: Compliance evaluation repository.
        audit_repo: Audit log repository.
        policy_engine: Policy engine client.

    Returns:
        Fully wired EvaluationService instance.
    """
    state = request.app.state
    settings = state.settings
    return EvaluationService(
        application_repo=application_repo,
        evaluation_repo=evaluation_repo,
        audit_repo=audit_repo,
        policy_engine=policy_engine,
        notification_service=state.notification_service,
        dispatcher=state.notification_dispatcher,
        default_policy_package=settings.default_policy_package,
        engine_timeout_s=settings.policy_eval_timeout_ms / 1000.0,
        audit_write_attempts=settings.audit_write_attempts,
        scan_clock_skew=timedelta(seconds=settings.scan_clock_skew_seconds),
    )


def get_evaluation_query_service(
    evaluation_repo: Annotated[ComplianceEvaluationRepository, Depends(get_evaluation_repository)],
) -> EvaluationQueryService:
    return EvaluationQueryService(evaluation_repo)


def get_audit_query_service(
    audit_repo: Annotated[AuditLogRepository, Depends(get_audit_repository)],
) -> AuditQueryService:
    return AuditQueryService(audit_repo)


def get_registry_service(
    application_repo: Annotated[ApplicationRepository, Depends(get_application_repository)],
) -> ApplicationRegistryService:
    return ApplicationRegistryService(application_repo)


# ---------------------------------------------------------------------------
# Compliance evaluation
# ---------------------------------------------------------------------------


@router.post(
    "/compliance/evaluate",
    response_model=EvaluationResponse,
    responses=_ERROR_RESPONSES,
    summary="Evaluate scan results against the environment's policy",
)
async def evaluate_compliance(
    body: EvaluateRequest,
    service: Annotated[EvaluationService, Depends(get_evaluation_service)],
) -> EvaluationResponse:
    """Run a compliance evaluation.

    A policy deny returns 200 with ``passed=false``. Errors map to 400, 404,
    502 or 500 with an ``{"error", "message"}`` body.
    """
    result = await service.evaluate(body.to_domain())
    if isinstance(result, Err):
        raise result.error
    return EvaluationResponse.from_summary(result.value)


@router.get("/compliance/recent", response_model=EvaluationListResponse, responses=_ERROR_RESPONSES)
async def list_recent_evaluations(
    service: Annotated[EvaluationQueryService, Depends(get_evaluation_query_service)],
    days: Annotated[int, Query(ge=1, le=365)] = 7,
) -> EvaluationListResponse:
    evaluations = await service.list_recent(days=days)
    return EvaluationListResponse.from_evaluations(evaluations)


@router.get("/compliance/blocked", response_model=EvaluationListResponse, responses=_ERROR_RESPONSES)
async def list_blocked_evaluations(
    service: Annotated[EvaluationQueryService, Depends(get_evaluation_query_service)],
    days: Annotated[int | None, Query(ge=1, le=3650)] = None,
) -> EvaluationListResponse:
    """Denied evaluations, newest first. Omit ``days`` to search the whole history."""
    evaluations = await service.list_blocked(days=days)
    return EvaluationListResponse.from_evaluations(evaluations)


@router.get(
    "/compliance/application/{application_id}",
    response_model=EvaluationListResponse,
    responses=_ERROR_RESPONSES,
)
async def list_application_evaluations(
    application_id: uuid.UUID,
    service: Annotated[EvaluationQueryService, Depends(get_evaluation_query_service)],
    environment: str | None = None,
    days: Annotated[int, Query(ge=1, le=365)] = 7,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=500)] = 50,
) -> EvaluationListResponse:
    evaluations = await service.list_by_application(
        application_id,
        environment=environment,
        days=days,
        page=page,
        page_size=page_size,
    )
    return EvaluationListResponse.from_evaluations(evaluations)


@router.get("/compliance/{evaluation_id}", response_model=EvaluationRecordResponse, responses=_ERROR_RESPONSES)
async def get_evaluation(
    evaluation_id: uuid.UUID,
    service: Annotated[EvaluationQueryService, Depends(get_evaluation_query_service)],
) -> EvaluationRecordResponse:
    evaluation = await service.get_by_id(evaluation_id)
    return EvaluationRecordResponse.from_domain(evaluation)


# ---------------------------------------------------------------------------
# Audit queries
# ---------------------------------------------------------------------------


@router.get("/audit/blocked", response_model=AuditLogListResponse, responses=_ERROR_RESPONSES)
async def list_blocked(
    service: Annotated[AuditQueryService, Depends(get_audit_query_service)],
    days: Annotated[int, Query(ge=1, le=365)] = 7,
    limit: Annotated[int | None, Query(ge=1, le=1000)] = None,
) -> AuditLogListResponse:
    """Denied decisions from the last ``days`` days, newest first."""
    logs = await service.list_blocked(days=days, limit=limit)
    return AuditLogListResponse.from_logs(logs, page_size=limit)


@router.get("/audit/critical-vulnerabilities", response_model=AuditLogListResponse, responses=_ERROR_RESPONSES)
async def list_critical_vulnerabilities(
    service: Annotated[AuditQueryService, Depends(get_audit_query_service)],
    days: Annotated[int, Query(ge=1, le=365)] = 30,
) -> AuditLogListResponse:
    logs = await service.list_with_critical_vulnerabilities(days=days)
    return AuditLogListResponse.from_logs(logs)


@router.get("/audit/statistics", response_model=AuditStatisticsResponse, responses=_ERROR_RESPONSES)
async def get_statistics(
    service: Annotated[AuditQueryService, Depends(get_audit_query_service)],
    from_date: datetime | None = None,
    to_date: datetime | None = None,
) -> AuditStatisticsResponse:
    statistics = await service.get_statistics(from_date=from_date, to_date=to_date)
    return AuditStatisticsResponse.from_domain(statistics)


@router.get("/audit/risk-tier/{risk_tier}", response_model=AuditLogListResponse, responses=_ERROR_RESPONSES)
async def list_by_risk_tier(
    risk_tier: str,
    service: Annotated[AuditQueryService, Depends(get_audit_query_service)],
    from_date: datetime | None = None,
    to_date: datetime | None = None,
) -> AuditLogListResponse:
    logs = await service.list_by_risk_tier(risk_tier, from_date=from_date, to_date=to_date)
    return AuditLogListResponse.from_logs(logs)


@router.get("/audit/evaluation/{evaluation_id}", response_model=AuditLogResponse, responses=_ERROR_RESPONSES)
async def get_audit_by_evaluation(
    evaluation_id: str,
    service: Annotated[AuditQueryService, Depends(get_audit_query_service)],
) -> AuditLogResponse:
    audit_log = await service.get_by_evaluation_id(evaluation_id)
    return AuditLogResponse.from_domain(audit_log)


@router.get(
    "/audit/application/{application_id}",
    response_model=AuditLogListResponse,
    responses=_ERROR_RESPONSES,
)
async def list_audit_by_application(
    application_id: uuid.UUID,
    service: Annotated[AuditQueryService, Depends(get_audit_query_service)],
    environment: str | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=500)] = 50,
) -> AuditLogListResponse:
    """Page through an application's audit history, newest first."""
    logs = await service.list_by_application(
        application_id,
        environment=environment,
        from_date=from_date,
        to_date=to_date,
        page=page,
        page_size=page_size,
    )
    return AuditLogListResponse.from_logs(logs, page=page, page_size=page_size)


@router.get("/audit/{audit_id}", response_model=AuditLogResponse, responses=_ERROR_RESPONSES)
async def get_audit_log(
    audit_id: uuid.UUID,
    service: Annotated[AuditQueryService, Depends(get_audit_query_service)],
) -> AuditLogResponse:
    audit_log = await service.get_by_id(audit_id)
    return AuditLogResponse.from_domain(audit_log)


# ---------------------------------------------------------------------------
# Application registry
# ---------------------------------------------------------------------------


@router.post(
    "/applications",
    response_model=ApplicationResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERROR_RESPONSES,
)
async def register_application(
    body: ApplicationRegisterRequest,
    service: Annotated[ApplicationRegistryService, Depends(get_registry_service)],
) -> ApplicationResponse:
    application = await service.register(name=body.name, owner=body.owner)
    return ApplicationResponse.from_domain(application)


@router.get("/applications", response_model=ApplicationListResponse, responses=_ERROR_RESPONSES)
async def list_applications(
    service: Annotated[ApplicationRegistryService, Depends(get_registry_service)],
    owner: str | None = None,
    active_only: bool = False,
) -> ApplicationListResponse:
    applications = await service.list_applications(owner=owner, active_only=active_only)
    return ApplicationListResponse.from_applications(applications)


@router.get("/applications/by-name/{name}", response_model=ApplicationResponse, responses=_ERROR_RESPONSES)
async def get_application_by_name(
    name: str,
    service: Annotated[ApplicationRegistryService, Depends(get_registry_service)],
) -> ApplicationResponse:
    application = await service.get_application_by_name(name)
    return ApplicationResponse.from_domain(application)


@router.get("/applications/{application_id}", response_model=ApplicationResponse, responses=_ERROR_RESPONSES)
async def get_application(
    application_id: uuid.UUID,
    service: Annotated[ApplicationRegistryService, Depends(get_registry_service)],
) -> ApplicationResponse:
    application = await service.get_application(application_id)
    return ApplicationResponse.from_domain(application)


@router.patch("/applications/{application_id}/owner", response_model=ApplicationResponse, responses=_ERROR_RESPONSES)
async def update_application_owner(
    application_id: uuid.UUID,
    body: ApplicationOwnerUpdateRequest,
    service: Annotated[ApplicationRegistryService, Depends(get_registry_service)],
) -> ApplicationResponse:
    application = await service.update_owner(application_id, body.owner)
    return ApplicationResponse.from_domain(application)


@router.post(
    "/applications/{application_id}/deactivate",
    response_model=ApplicationResponse,
    responses=_ERROR_RESPONSES,
)
async def deactivate_application(
    application_id: uuid.UUID,
    service: Annotated[ApplicationRegistryService, Depends(get_registry_service)],
) -> ApplicationResponse:
    application = await service.deactivate_application(application_id)
    return ApplicationResponse.from_domain(application)


@router.post(
    "/applications/{application_id}/environments",
    response_model=EnvironmentResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERROR_RESPONSES,
)
async def add_environment(
    application_id: uuid.UUID,
    body: EnvironmentCreateRequest,
    service: Annotated[ApplicationRegistryService, Depends(get_registry_service)],
) -> EnvironmentResponse:
    config = await service.add_environment(
        application_id,
        name=body.name,
        risk_tier=body.risk_tier,
        security_tools=body.security_tools,
        policy_references=body.policy_references,
        metadata=body.metadata,
    )
    return EnvironmentResponse.from_domain(config)


@router.patch(
    "/applications/{application_id}/environments/{name}",
    response_model=EnvironmentResponse,
    responses=_ERROR_RESPONSES,
)
async def update_environment(
    application_id: uuid.UUID,
    name: str,
    body: EnvironmentUpdateRequest,
    service: Annotated[ApplicationRegistryService, Depends(get_registry_service)],
) -> EnvironmentResponse:
    config = await service.update_environment(
        application_id,
        name,
        risk_tier=body.risk_tier,
        security_tools=body.security_tools,
        policy_references=body.policy_references,
    )
    return EnvironmentResponse.from_domain(config)


@router.post(
    "/applications/{application_id}/environments/{name}/deactivate",
    response_model=EnvironmentResponse,
    responses=_ERROR_RESPONSES,
)
async def deactivate_environment(
    application_id: uuid.UUID,
    name: str,
    service: Annotated[ApplicationRegistryService, Depends(get_registry_service)],
) -> EnvironmentResponse:
    config = await service.deactivate_environment(application_id, name)
    return EnvironmentResponse.from_domain(config)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@router.get("/health/policy-engine", response_model=PolicyEngineHealthResponse)
async def policy_engine_health(
    policy_engine: Annotated[IPolicyEngineClient, Depends(get_policy_engine)],
) -> PolicyEngineHealthResponse:
    """Report whether the policy engine answers its health check."""
    return PolicyEngineHealthResponse(healthy=await policy_engine.health_check())
