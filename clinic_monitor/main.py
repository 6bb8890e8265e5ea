import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, HTTPException, status, Query

from clinic_monitor.aggregator import PatientNameIndex, build_conversations, filter_conversations, summarize
from clinic_monitor.analytics import analyze_performance
from clinic_monitor.config import settings
from clinic_monitor.evolution import EvolutionClient
from clinic_monitor.logging_utils import setup_logging, RequestLoggingMiddleware, log_reconcile_data
from clinic_monitor.metrics import get_metrics, get_metrics_content_type
from clinic_monitor.reconciler import GENERATION_LOG, OUTGOING_LOG, Reconciler, guard_source
from clinic_monitor.schemas import (
    FETCHABLE_MEDIA_KINDS,
    AIPerformanceReport,
    Conversation,
    ConversationsListResponse,
    ErrorResponse,
    HealthResponse,
    MediaKind,
    MediaResponse,
    StatsResponse,
)
from clinic_monitor.sources import ChatHistoryLog, ConversationLogStore, load_patient_index
from clinic_monitor.storage import init_db, check_db_health


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: ensure tables exist, open the provider client
    - Shutdown: close the provider client
    """
    init_db()
    app.state.provider = EvolutionClient(
        base_url=settings.EVOLUTION_API_URL,
        api_key=settings.EVOLUTION_API_KEY,
        instance=settings.EVOLUTION_INSTANCE,
        timeout_s=settings.HTTP_TIMEOUT_SECONDS,
    )
    app.state.fingerprint_snapshot = None
    yield
    await app.state.provider.aclose()


app = FastAPI(
    title="Clinic Conversation Monitor",
    description="Read-only view of WhatsApp conversations handled by the clinic assistant",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Dependencies
# =============================================================================

def get_provider(request: Request) -> EvolutionClient:
    return request.app.state.provider


def get_generation_log() -> ChatHistoryLog:
    return ChatHistoryLog()


def get_outgoing_log() -> ConversationLogStore:
    return ConversationLogStore()


def get_reconciler(
    provider: EvolutionClient = Depends(get_provider),
    generation_log: ChatHistoryLog = Depends(get_generation_log),
    outgoing_log: ConversationLogStore = Depends(get_outgoing_log),
) -> Reconciler:
    return Reconciler(
        provider=provider,
        generation_log=generation_log,
        outgoing_log=outgoing_log,
        options=settings.engine_options(),
    )


async def get_patient_index() -> PatientNameIndex:
    return await load_patient_index()


async def load_conversations(
    request: Request,
    reconciler: Reconciler,
    patient_index: PatientNameIndex,
) -> tuple[list[Conversation], tuple[str, ...]]:
    """
    Reconcile all sources and summarize per contact.

    The fingerprint snapshot lives on app.state and is replaced wholesale by
    each run; concurrent requests may both rebuild it, which is harmless.
    """
    snapshot = getattr(request.app.state, "fingerprint_snapshot", None)
    result = await reconciler.reconcile(snapshot=snapshot)
    request.app.state.fingerprint_snapshot = result.snapshot

    conversations = build_conversations(result.messages, result.contact_names, patient_index)
    return conversations, result.degraded_sources


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. The provider API key is set (non-empty)
    2. DB is reachable and the monitored tables exist

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.EVOLUTION_API_KEY:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="EVOLUTION_API_KEY not configured"
        )

    if not await asyncio.to_thread(check_db_health):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get(
    "/conversations",
    response_model=ConversationsListResponse,
)
async def list_conversations(
    request: Request,
    q: Annotated[str | None, Query(description="Search number, name or message text (case-insensitive)")] = None,
    unread_only: Annotated[bool, Query(description="Only conversations with unread incoming messages")] = False,
    reconciler: Reconciler = Depends(get_reconciler),
    patient_index: PatientNameIndex = Depends(get_patient_index),
) -> ConversationsListResponse:
    """
    List reconciled conversations, most recent first.

    Always answers 200: sources that fail are listed in `degraded_sources`
    and simply contribute no messages.
    """
    logger.info(f"GET /conversations: q={q}, unread_only={unread_only}")

    conversations, degraded = await load_conversations(request, reconciler, patient_index)
    conversations = filter_conversations(conversations, q, unread_only)

    log_reconcile_data(request, conversations=len(conversations), degraded_sources=degraded)
    return ConversationsListResponse(
        data=conversations,
        total=len(conversations),
        degraded_sources=list(degraded),
    )


@app.get(
    "/conversations/{contact_key}",
    response_model=Conversation,
    responses={404: {"model": ErrorResponse, "description": "No conversation for this contact"}},
)
async def get_conversation(
    request: Request,
    contact_key: str,
    reconciler: Reconciler = Depends(get_reconciler),
    patient_index: PatientNameIndex = Depends(get_patient_index),
) -> Conversation:
    """Full merged timeline for one contact."""
    conversations, degraded = await load_conversations(request, reconciler, patient_index)
    log_reconcile_data(request, conversations=len(conversations), degraded_sources=degraded)

    for conversation in conversations:
        if conversation.contact_key == contact_key:
            return conversation

    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail="conversation not found"
    )


# =============================================================================
# Media Route
# =============================================================================

@app.get(
    "/media/{message_key}",
    response_model=MediaResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Media unavailable, retry later"},
        422: {"description": "Unsupported media kind"},
    },
)
async def get_media(
    message_key: str,
    kind: Annotated[MediaKind, Query(description="Media kind of the message")],
    provider: EvolutionClient = Depends(get_provider),
) -> MediaResponse:
    """
    Fetch a message's media from the provider on demand.

    A 404 means the provider returned nothing; the message list is unaffected
    and the client may retry.
    """
    if kind not in FETCHABLE_MEDIA_KINDS:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"media kind '{kind.value}' has no content to fetch"
        )

    media = await provider.fetch_media(message_key, kind)
    if media is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="media unavailable"
        )

    return MediaResponse(
        message_key=message_key,
        media_kind=kind,
        base64=media.base64,
        mimetype=media.mimetype,
    )


# =============================================================================
# Stats Route
# =============================================================================

@app.get(
    "/stats",
    response_model=StatsResponse,
)
async def get_statistics(
    request: Request,
    reconciler: Reconciler = Depends(get_reconciler),
    patient_index: PatientNameIndex = Depends(get_patient_index),
    provider: EvolutionClient = Depends(get_provider),
) -> StatsResponse:
    """
    Conversation analytics over the reconciled view, plus the provider
    instance's own counters (null if the provider is unreachable).
    """
    logger.info("GET /stats: computing statistics")

    (conversations, degraded), instance = await asyncio.gather(
        load_conversations(request, reconciler, patient_index),
        provider.fetch_instance_stats(),
    )
    log_reconcile_data(request, conversations=len(conversations), degraded_sources=degraded)

    return StatsResponse(
        **summarize(conversations),
        instance_name=reconciler.options.instance_name,
        instance=instance,
    )


@app.get(
    "/stats/ai",
    response_model=AIPerformanceReport,
)
async def get_ai_performance(
    request: Request,
    generation_log: ChatHistoryLog = Depends(get_generation_log),
    outgoing_log: ConversationLogStore = Depends(get_outgoing_log),
) -> AIPerformanceReport:
    """
    Assistant performance over both logs: resolution, bookings, staff
    interventions, tool usage, detected problems and strengths.

    A log that cannot be read contributes nothing and is listed in
    `degraded_sources`.
    """
    logger.info("GET /stats/ai: analyzing assistant performance")

    degraded: set[str] = set()
    rows, log_rows = await asyncio.gather(
        guard_source(GENERATION_LOG, generation_log.fetch_rows(), [], degraded),
        guard_source(OUTGOING_LOG, outgoing_log.fetch_all_rows(), [], degraded),
    )

    report = analyze_performance(rows, log_rows, tz=settings.analytics_timezone())
    log_reconcile_data(request, conversations=report.total_conversations, degraded_sources=sorted(degraded))

    return report.model_copy(update={"degraded_sources": sorted(degraded)})


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
