"""
SLA Controllers (API Routes)
=============================

FastAPI routes for SLA rule administration and work item tracking.

Controllers are thin - they delegate to application services. Domain
errors propagate to the ApplicationException handler registered in main.
"""

import time
from typing import List, Optional
from datetime import datetime
from uuid import uuid4

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.infrastructure.database import get_session
from src.sla.application import (
    SLAEvaluationService, SLAQueryService, RuleAdminService, INotificationPort,
    SlaRuleCreateDTO, SlaRuleUpdateDTO, SlaRuleResponse,
    CalculateSlaRequest, CalculateSlaResponse, RulePerformanceResponse,
    WorkItemIngestRequest, IngestResponse,
    WorkItemSLAResponse, SlaStateResponse, EscalationEventResponse,
    DashboardResponse, DashboardSummary, EvaluationSummaryResponse
)
from src.sla.domain import SlaEvaluator, SlaState, WorkItem, EscalationEvent
from src.sla.infrastructure import (
    SQLAlchemySlaRuleRepository,
    SQLAlchemyWorkItemRepository,
    SQLAlchemyEscalationRepository,
    SlackNotifier
)
from src.config import settings, SlaStatus
from src.core import ApplicationException

from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/sla", tags=["SLA Monitoring"])


# ========== Example payloads for Swagger ==========

RULE_CREATE_EXAMPLE = {
    "rule_name": "Critical brochure requests",
    "info_type": "Brochure",
    "priority": "Critical",
    "response_time_hours": 4,
    "resolution_time_hours": 24,
    "escalation_levels": [
        {"level": 1, "escalation_time_hours": 2, "escalate_to_role": "Team Lead"},
        {"level": 2, "escalation_time_hours": 4, "escalate_to_role": "Manager", "channels": ["Email", "Slack"]}
    ],
    "business_hours": {
        "enabled": True,
        "timezone": "Asia/Kolkata",
        "working_days": ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"],
        "start_time": "09:00",
        "end_time": "18:00"
    }
}

INGEST_RESPONSE_EXAMPLE = {
    "created": 1,
    "updated": 0,
    "failed": 0,
    "errors": []
}


# ========== Dependencies ==========

def get_notifier(request: Request) -> INotificationPort:
    """Notifier created at startup, or a log-only Slack notifier."""
    notifier = getattr(request.app.state, "notifier", None)
    return notifier or SlackNotifier(webhook_url="")


def get_evaluator() -> SlaEvaluator:
    return SlaEvaluator(settings.sla_warning_fraction)


async def get_rule_admin_service(
    session: AsyncSession = Depends(get_session)
) -> RuleAdminService:
    """Get rule admin service instance."""
    return RuleAdminService(
        SQLAlchemySlaRuleRepository(session),
        SQLAlchemyWorkItemRepository(session)
    )


async def get_query_service(
    session: AsyncSession = Depends(get_session),
    evaluator: SlaEvaluator = Depends(get_evaluator)
) -> SLAQueryService:
    """Get read-only SLA query service instance."""
    return SLAQueryService(
        SQLAlchemyWorkItemRepository(session),
        SQLAlchemySlaRuleRepository(session),
        SQLAlchemyEscalationRepository(session),
        evaluator
    )


async def get_evaluation_service(
    session: AsyncSession = Depends(get_session),
    notifier: INotificationPort = Depends(get_notifier),
    evaluator: SlaEvaluator = Depends(get_evaluator)
) -> SLAEvaluationService:
    """Get SLA evaluation service instance."""
    return SLAEvaluationService(
        SQLAlchemyWorkItemRepository(session),
        SQLAlchemySlaRuleRepository(session),
        SQLAlchemyEscalationRepository(session),
        notifier,
        evaluator=evaluator,
        page_size=settings.sla_page_size
    )


def _unprocessable(error: ValueError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(error))


def _state_response(state: SlaState) -> SlaStateResponse:
    return SlaStateResponse(
        rule_id=state.rule_id,
        response_due_at=state.response_due_at,
        resolution_due_at=state.resolution_due_at,
        current_status=state.current_status,
        highest_escalation_fired=state.highest_escalation_fired,
        escalated_at=state.escalated_at,
        escalated_to=state.escalated_to
    )


def _event_response(event: EscalationEvent) -> EscalationEventResponse:
    return EscalationEventResponse(
        id=event.id,
        item_id=event.item_id,
        kind=event.kind,
        level=event.level,
        escalated_to=event.escalated_to,
        channels=event.channels,
        fired_at=event.fired_at,
        notification_sent=event.notification_sent,
        notification_sent_at=event.notification_sent_at
    )


def _work_item_response(
    item: WorkItem,
    state: SlaState,
    escalations: Optional[List[EscalationEvent]] = None
) -> WorkItemSLAResponse:
    return WorkItemSLAResponse(
        item_id=item.id,
        external_id=item.external_id,
        priority=item.priority,
        info_type=item.info_type,
        request_channel=item.channel,
        status_category=item.status_category,
        assigned_to=item.assigned_to,
        created_at=item.created_at,
        first_response_at=item.first_response_at,
        is_frozen=item.is_terminal,
        sla=_state_response(state),
        escalations=[_event_response(e) for e in escalations or []]
    )


# ========== Rule Administration ==========

@router.get(
    "/rules",
    response_model=List[SlaRuleResponse],
    summary="List SLA rules",
)
async def list_rules(
    info_type: Optional[str] = Query(None, description="Filter by info type"),
    priority: Optional[str] = Query(None, description="Filter by priority (Low, Medium, High, Critical)"),
    is_active: Optional[bool] = Query(None, description="Filter by active flag"),
    service: RuleAdminService = Depends(get_rule_admin_service)
):
    rules = await service.list_rules(info_type=info_type, priority=priority, is_active=is_active)
    return [SlaRuleResponse.from_domain(r) for r in rules]


@router.get(
    "/rules/active",
    response_model=List[SlaRuleResponse],
    summary="List active SLA rules",
)
async def list_active_rules(service: RuleAdminService = Depends(get_rule_admin_service)):
    return [SlaRuleResponse.from_domain(r) for r in await service.active_rules()]


@router.get(
    "/rules/default",
    response_model=SlaRuleResponse,
    summary="Get the default SLA rule",
    responses={404: {"description": "No active default rule"}}
)
async def get_default_rule(service: RuleAdminService = Depends(get_rule_admin_service)):
    return SlaRuleResponse.from_domain(await service.default_rule())


@router.get(
    "/rules/by-type/{info_type}",
    response_model=List[SlaRuleResponse],
    summary="List active SLA rules for an info type",
)
async def list_rules_by_type(
    info_type: str,
    service: RuleAdminService = Depends(get_rule_admin_service)
):
    return [SlaRuleResponse.from_domain(r) for r in await service.rules_by_info_type(info_type)]


@router.get(
    "/rules/performance",
    response_model=List[RulePerformanceResponse],
    summary="Per-rule SLA compliance",
    description="""
    Compliance of evaluated work items grouped by the rule they are bound to.

    A work item counts as breached when its stored SLA status is `breached`.
    """
)
async def get_rule_performance(
    start_date: Optional[datetime] = Query(None, description="Work items created at or after"),
    end_date: Optional[datetime] = Query(None, description="Work items created at or before"),
    rule_id: Optional[str] = Query(None, description="Restrict to one rule"),
    service: RuleAdminService = Depends(get_rule_admin_service)
):
    report = await service.performance(start_date, end_date, rule_id)
    return [
        RulePerformanceResponse(
            rule_id=row.rule_id,
            rule_name=row.rule_name,
            total_requests=row.total_requests,
            within_sla=row.within_sla,
            breached_sla=row.breached_sla,
            sla_compliance_percentage=row.compliance_percentage,
            avg_response_time_hours=row.avg_response_time_hours
        )
        for row in report
    ]


@router.post(
    "/rules/calculate-sla",
    response_model=CalculateSlaResponse,
    summary="Preview SLA deadlines",
    responses={422: {"description": "No rule applies and no default exists"}}
)
async def calculate_sla(
    request: CalculateSlaRequest,
    service: RuleAdminService = Depends(get_rule_admin_service)
):
    rule, due = await service.calculate_sla(
        request.info_type, request.priority, request.request_channel, request.created_at
    )
    return CalculateSlaResponse(
        rule_id=rule.id,
        rule_name=rule.name,
        response_due_at=due.response_due_at,
        resolution_due_at=due.resolution_due_at,
        is_malformed=due.is_malformed
    )


@router.get(
    "/rules/{rule_id}",
    response_model=SlaRuleResponse,
    summary="Get SLA rule",
    responses={404: {"description": "Rule not found"}}
)
async def get_rule(rule_id: str, service: RuleAdminService = Depends(get_rule_admin_service)):
    return SlaRuleResponse.from_domain(await service.get_rule(rule_id))


@router.post(
    "/rules",
    response_model=SlaRuleResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create SLA rule",
    description="""
    Create an SLA rule. The rule ID (`SLA-YYYYMMDD-NNNN`) is assigned on create.

    A rule created with `is_default: true` becomes the only default rule.
    Durations are in business hours measured on `business_hours`.
    """,
    responses={
        409: {"description": "Default rule cannot be inactive"},
        422: {"description": "Invalid rule"}
    }
)
async def create_rule(
    request: SlaRuleCreateDTO = Body(..., examples=[RULE_CREATE_EXAMPLE]),
    service: RuleAdminService = Depends(get_rule_admin_service)
):
    try:
        rule = request.to_domain()
    except ValueError as e:
        raise _unprocessable(e)
    return SlaRuleResponse.from_domain(await service.create_rule(rule))


@router.put(
    "/rules/{rule_id}",
    response_model=SlaRuleResponse,
    summary="Update SLA rule",
    description="""
    Update the fields sent in the body. Work items already bound to the
    rule keep the deadlines computed when they were first evaluated.
    """,
    responses={
        404: {"description": "Rule not found"},
        422: {"description": "Invalid rule"}
    }
)
async def update_rule(
    rule_id: str,
    request: SlaRuleUpdateDTO,
    service: RuleAdminService = Depends(get_rule_admin_service)
):
    try:
        changes = request.to_changes()
        rule = await service.update_rule(rule_id, changes)
    except ValueError as e:
        raise _unprocessable(e)
    return SlaRuleResponse.from_domain(rule)


@router.delete(
    "/rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete SLA rule",
    responses={
        404: {"description": "Rule not found"},
        409: {"description": "Work items are bound to the rule"}
    }
)
async def delete_rule(rule_id: str, service: RuleAdminService = Depends(get_rule_admin_service)):
    await service.delete_rule(rule_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put(
    "/rules/{rule_id}/set-default",
    response_model=SlaRuleResponse,
    summary="Make a rule the default",
    responses={
        404: {"description": "Rule not found"},
        409: {"description": "Rule is inactive"}
    }
)
async def set_default_rule(rule_id: str, service: RuleAdminService = Depends(get_rule_admin_service)):
    return SlaRuleResponse.from_domain(await service.set_default(rule_id))


@router.put(
    "/rules/{rule_id}/toggle-status",
    response_model=SlaRuleResponse,
    summary="Activate or deactivate a rule",
    description="""
    Deactivating the default rule hands the default over to the active
    rule with the lowest ID. The default cannot be deactivated when it is
    the only active rule.
    """,
    responses={
        404: {"description": "Rule not found"},
        409: {"description": "Rule is the last active default"}
    }
)
async def toggle_rule_status(rule_id: str, service: RuleAdminService = Depends(get_rule_admin_service)):
    return SlaRuleResponse.from_domain(await service.toggle_status(rule_id))


# ========== Work Items ==========

@router.post(
    "/work-items",
    response_model=IngestResponse,
    summary="Ingest work items for SLA tracking",
    description="""
    Ingest a batch of CRM work items (info requests and enquiries).

    **Idempotent**: Work items are identified by `id` (CRM work item ID).
    Existing items get their CRM fields overwritten; SLA state is kept.

    **Priority Levels**: `Critical`, `High`, `Medium`, `Low`

    **Status Categories**: `Open`, `In Progress`, `Pending`, `Resolved`, `Closed`, `Cancelled`.
    Resolved, closed and cancelled items are frozen for SLA purposes.
    """,
    responses={
        200: {
            "description": "Work items ingested",
            "content": {"application/json": {"example": INGEST_RESPONSE_EXAMPLE}}
        }
    }
)
async def ingest_work_items(
    request: WorkItemIngestRequest,
    session: AsyncSession = Depends(get_session)
):
    start_time = time.perf_counter()

    created = 0
    updated = 0
    failed = 0
    errors = []

    repo = SQLAlchemyWorkItemRepository(session)

    for item_dto in request.items:
        try:
            existing = await repo.get_by_external_id(item_dto.id)
            item_id = existing.id if existing else str(uuid4())

            if await repo.upsert(item_dto.to_domain(item_id)):
                created += 1
            else:
                updated += 1

        except (ApplicationException, ValueError) as e:
            failed += 1
            errors.append(f"{item_dto.id}: {str(e)}")
            logger.error(
                "Failed to ingest work item",
                extra={"external_id": item_dto.id, "error": str(e)}
            )

    await session.commit()

    logger.info(
        "Work item ingestion complete",
        extra={
            "items_created": created,
            "items_updated": updated,
            "items_failed": failed,
            "processing_time_ms": int((time.perf_counter() - start_time) * 1000)
        }
    )

    return IngestResponse(created=created, updated=updated, failed=failed, errors=errors)


@router.get(
    "/work-items/{item_id}",
    response_model=WorkItemSLAResponse,
    summary="Get work item SLA status",
    description="""
    SLA status of a work item computed at request time.

    Read-only: nothing is persisted and no escalation fires. Use
    `POST /sla/work-items/{item_id}/evaluate` to apply the evaluation.
    """,
    responses={404: {"description": "Work item not found"}}
)
async def get_work_item_sla(
    item_id: str,
    service: SLAQueryService = Depends(get_query_service)
):
    item, state, escalations = await service.get_item_status(item_id)
    return _work_item_response(item, state, escalations)


@router.post(
    "/work-items/{item_id}/evaluate",
    response_model=WorkItemSLAResponse,
    summary="Evaluate a work item now",
    description="""
    Evaluate one work item, persist its SLA state and fire any escalation
    that is due.
    """,
    responses={
        404: {"description": "Work item not found"},
        409: {"description": "SLA state changed concurrently"},
        422: {"description": "No rule applies and no default exists"}
    }
)
async def evaluate_work_item(
    item_id: str,
    service: SLAEvaluationService = Depends(get_evaluation_service),
    query: SLAQueryService = Depends(get_query_service)
):
    item, result = await service.evaluate_item(item_id)
    escalations = await query.escalation_history(item.id)
    return _work_item_response(item, result.state, escalations)


@router.get(
    "/work-items/{item_id}/escalations",
    response_model=List[EscalationEventResponse],
    summary="Escalation history of a work item",
    responses={404: {"description": "Work item not found"}}
)
async def get_escalation_history(
    item_id: str,
    service: SLAQueryService = Depends(get_query_service)
):
    return [_event_response(e) for e in await service.escalation_history(item_id)]


@router.get(
    "/dashboard",
    response_model=DashboardResponse,
    summary="Get SLA dashboard",
    description="""
    Work items with their SLA status computed at request time.

    **Query Parameters:**
    - `priority`, `info_type`, `request_channel`, `assigned_to`, `status`: CRM filters
    - `rule_id`: Work items bound to a rule
    - `sla_status`: `on_track`, `at_risk`, `breached` or `unevaluated`
    - `limit` / `offset`: Pagination

    **Summary** counts the returned items per status; the breach rate is
    taken over evaluated items only.
    """
)
async def get_dashboard(
    priority: Optional[str] = Query(None, description="Filter by priority"),
    info_type: Optional[str] = Query(None, description="Filter by info type"),
    request_channel: Optional[str] = Query(None, description="Filter by request channel"),
    assigned_to: Optional[str] = Query(None, description="Filter by assignee"),
    status_category: Optional[str] = Query(None, alias="status", description="Filter by status category"),
    rule_id: Optional[str] = Query(None, description="Filter by bound SLA rule"),
    sla_status: Optional[str] = Query(None, description="Filter by SLA status"),
    limit: int = Query(100, ge=1, le=1000, description="Results per page"),
    offset: int = Query(0, ge=0, description="Page offset"),
    service: SLAQueryService = Depends(get_query_service)
):
    filters = {
        key: value for key, value in (
            ("priority", priority),
            ("info_type", info_type),
            ("request_channel", request_channel),
            ("assigned_to", assigned_to),
            ("status_category", status_category),
            ("rule_id", rule_id),
        ) if value
    }

    rows, counts = await service.dashboard(filters, sla_status=sla_status, limit=limit, offset=offset)

    evaluated = counts[SlaStatus.ON_TRACK] + counts[SlaStatus.AT_RISK] + counts[SlaStatus.BREACHED]
    breach_rate = (counts[SlaStatus.BREACHED] / evaluated * 100) if evaluated > 0 else 0.0

    return DashboardResponse(
        items=[_work_item_response(item, state) for item, state in rows],
        total_count=len(rows),
        summary=DashboardSummary(
            total_items=len(rows),
            on_track_count=counts[SlaStatus.ON_TRACK],
            at_risk_count=counts[SlaStatus.AT_RISK],
            breached_count=counts[SlaStatus.BREACHED],
            unevaluated_count=counts["unevaluated"],
            breach_rate=round(breach_rate, 2)
        )
    )


@router.post(
    "/evaluate",
    response_model=EvaluationSummaryResponse,
    summary="Run an SLA evaluation pass",
    description="Evaluate every open work item now, the same pass the scheduler runs."
)
async def run_evaluation_pass(service: SLAEvaluationService = Depends(get_evaluation_service)):
    summary = await service.run_pass()
    return EvaluationSummaryResponse(**summary.to_dict())


# Export router for inclusion in main app
sla_router = router
