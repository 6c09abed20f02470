"""
API REST principal usando FastAPI
"""

from fastapi import FastAPI, Depends, Query, Request, BackgroundTasks
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from typing import List, Optional, Dict, Any, Literal
import json
import logging
from pydantic import BaseModel, Field, EmailStr

from .config.settings import get_settings
from .domain.exceptions import BrandVizError, ForbiddenError, NotFoundError, UnauthorizedError
from .domain.models import UserModel
from .infrastructure.database_manager import DatabaseManager
from .infrastructure.email_client import SendGridEmailClient
from .infrastructure.llm_client import HttpLLMClient
from .infrastructure.qstash_client import QStashApiClient, QStashReceiver, SignatureError
from .services.ai_service import AIService
from .services.analysis_queue_service import AnalysisJob, AnalysisQueueService
from .services.analytics_service import AnalyticsService
from .services.background_analysis_service import BackgroundAnalysisService
from .services.brand_service import BrandService
from .services.credit_service import CreditService
from .services.cron_lock_service import CronLockService
from .services.data_organization_service import DataOrganizationService
from .services.plan_service import PlanService
from .services.prompt_service import PromptService
from .services.qstash_service import QStashService
from .services.stripe_service import StripeService
from .services.team_service import TeamService
from .services.user_service import UserService, decode_access_token
from .services.workflow_service import WorkflowService
from .utils.helpers import serialize_objectid, is_valid_objectid, safe_objectid, utcnow

ModelName = Literal["ChatGPT", "Claude", "Gemini"]
StageName = Literal["TOFU", "MOFU", "BOFU", "EVFU"]
RoleName = Literal["owner", "admin", "viewer"]
Period = Literal["7d", "30d", "90d"]

# ============================================================================
# REQUEST MODELS (Pydantic)
# ============================================================================

class RegisterRequest(BaseModel):
    full_name: str = Field(min_length=1)
    email: EmailStr
    password: str = Field(min_length=6)

class LoginRequest(BaseModel):
    email: str
    password: str

class ForgotPasswordRequest(BaseModel):
    email: str

class ResetPasswordRequest(BaseModel):
    token: str
    id: str
    newPassword: str = Field(min_length=6)

class ResendVerificationRequest(BaseModel):
    userId: str

class UpdateUserRequest(BaseModel):
    data: Dict[str, Any]

class CreatePlanRequest(BaseModel):
    planId: str
    name: str
    description: str = ""
    price: float = 0
    max_brands: Optional[int] = None
    ai_models_supported: Optional[int] = None
    features: Optional[List[str]] = None

class UpdatePlanRequest(BaseModel):
    id: str = Field(alias="_id")
    data: Dict[str, Any]

class CreateBrandRequest(BaseModel):
    user_id: str
    name: str = Field(min_length=2)
    category: Optional[str] = None
    region: Optional[str] = None
    use_case: Optional[str] = None
    target_audience: Optional[List[str]] = None
    competitors: Optional[List[str]] = None
    feature_list: Optional[List[str]] = None

class UpdateBrandRequest(BaseModel):
    """Campos editables de una marca"""
    user_id: str
    name: Optional[str] = None
    category: Optional[str] = None
    region: Optional[str] = None
    use_case: Optional[str] = None
    target_audience: Optional[List[str]] = None
    competitors: Optional[List[str]] = None
    feature_list: Optional[List[str]] = None

class InviteEmail(BaseModel):
    email: EmailStr
    role: RoleName = "viewer"

class InviteRequest(BaseModel):
    user_id: str
    emails: List[InviteEmail] = Field(min_length=1)
    ttl_hours: Optional[int] = Field(default=None, ge=1, le=24 * 14)

class ResendInviteRequest(BaseModel):
    user_id: str
    inviteId: str
    ttl_hours: Optional[int] = Field(default=None, ge=1, le=24 * 14)

class SignupData(BaseModel):
    full_name: str = Field(min_length=2, max_length=120)
    password: str = Field(min_length=6, max_length=128)

class AcceptInviteRequest(BaseModel):
    invitedBy: str
    verifyToken: str = Field(min_length=10)
    email: EmailStr
    signup: Optional[SignupData] = None

class RemoveMemberRequest(BaseModel):
    memberIdToRemove: str
    userIdRequesting: str
    memberType: Literal["membership", "invite"]

class TriggerAnalysisRequest(BaseModel):
    userId: str
    models: Optional[List[ModelName]] = None
    stages: Optional[List[StageName]] = None

class EstimateRequest(BaseModel):
    userId: str
    models: List[ModelName] = Field(min_length=1)

class PurchaseCreditsRequest(BaseModel):
    userId: str
    packageId: str
    paymentMethod: Literal["payment_intent", "checkout"] = "checkout"
    successUrl: Optional[str] = None
    cancelUrl: Optional[str] = None

# ============================================================================
# CONFIGURACIÓN Y STARTUP
# ============================================================================

settings = get_settings()

# Configurar logging
logging.basicConfig(
    level=getattr(logging, settings.logging.level.upper(), logging.INFO),
    format=settings.logging.format
)
logger = logging.getLogger(__name__)

# Crear app FastAPI
app = FastAPI(
    title="BrandViz API",
    description="API REST de visibilidad de marca en modelos de lenguaje con sistema de créditos",
    version="1.0.0"
)

# Configurar CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

security = HTTPBearer(auto_error=False)

# Dependencias globales
db_manager = None
user_service = None
plan_service = None
brand_service = None
team_service = None
credit_service = None
stripe_service = None
analytics_service = None
queue_service = None
background_service = None
qstash_service = None
workflow_service = None
cron_lock_service = None
qstash_receiver = None
http_clients = []

@app.on_event("startup")
async def startup_event():
    """Inicializar servicios al arrancar la API"""
    global db_manager, user_service, plan_service, brand_service, team_service, credit_service
    global stripe_service, analytics_service, queue_service, background_service, qstash_service
    global workflow_service, cron_lock_service, qstash_receiver, http_clients

    db_manager = DatabaseManager(settings.database.uri, settings.database.database, settings.database)
    await db_manager.connect()

    base_url = settings.app.base_url
    email_client = SendGridEmailClient(settings.email)
    llm_client = HttpLLMClient(settings.llm)
    qstash_client = QStashApiClient(settings.qstash)
    http_clients = [email_client, llm_client, qstash_client]
    prompt_service = PromptService(settings.app.prompts_csv_path)
    ai_service = AIService(llm_client, prompt_service, settings.llm.prompt_delay_seconds)
    data_organization_service = DataOrganizationService(db_manager, prompt_service)

    credit_service = CreditService(db_manager, settings.app.credits_per_model, settings.app.free_credits)
    brand_service = BrandService(db_manager)
    user_service = UserService(db_manager, credit_service, brand_service, email_client, settings.auth, base_url)
    plan_service = PlanService(db_manager)
    team_service = TeamService(db_manager, brand_service, email_client, settings.auth, base_url)
    stripe_service = StripeService(db_manager, credit_service, settings.stripe)
    analytics_service = AnalyticsService(db_manager, brand_service, credit_service, data_organization_service)
    queue_service = AnalysisQueueService(db_manager, ai_service, data_organization_service, email_client, base_url)
    background_service = BackgroundAnalysisService(
        db_manager, ai_service, data_organization_service, email_client, base_url
    )
    qstash_service = QStashService(db_manager, qstash_client, background_service, base_url)
    workflow_service = WorkflowService(db_manager, ai_service, data_organization_service, email_client, base_url)
    cron_lock_service = CronLockService(db_manager)
    qstash_receiver = QStashReceiver(settings.qstash.current_signing_key, settings.qstash.next_signing_key)

    if settings.qstash.token:
        await qstash_service.initialize_stuck_analysis_checking()

    logger.info("API services initialized")

@app.on_event("shutdown")
async def shutdown_event():
    """Cerrar conexiones al apagar la API"""
    for client in http_clients:
        await client.close()
    if db_manager:
        await db_manager.close()
    logger.info("API services shut down")

# Dependency providers
async def get_user_service() -> UserService:
    return user_service

async def get_plan_service() -> PlanService:
    return plan_service

async def get_brand_service() -> BrandService:
    return brand_service

async def get_team_service() -> TeamService:
    return team_service

async def get_credit_service() -> CreditService:
    return credit_service

async def get_stripe_service() -> StripeService:
    return stripe_service

async def get_analytics_service() -> AnalyticsService:
    return analytics_service

async def get_queue_service() -> AnalysisQueueService:
    return queue_service

async def get_background_service() -> BackgroundAnalysisService:
    return background_service

async def get_qstash_service() -> QStashService:
    return qstash_service

async def get_workflow_service() -> WorkflowService:
    return workflow_service

async def get_cron_lock_service() -> CronLockService:
    return cron_lock_service

async def get_qstash_receiver() -> QStashReceiver:
    return qstash_receiver

# ============================================================================
# AUTH, ERRORES Y RESPUESTAS
# ============================================================================

async def require_auth(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> Dict[str, Any]:
    """Valida el JWT de sesión y devuelve sus claims"""
    if credentials is None:
        raise UnauthorizedError()
    return decode_access_token(credentials.credentials, settings.auth)

def ensure_self(claims: Dict[str, Any], user_id: str) -> None:
    """El userId de la request debe ser el del token"""
    if claims.get("sub") != user_id:
        raise ForbiddenError("Access denied!")

def require_object_id(value: Optional[str], message: str) -> str:
    if not is_valid_objectid(value):
        raise BrandVizError(message)
    return value

def respond(message: Optional[str] = None, data: Any = None, status_code: int = 200, **extra) -> JSONResponse:
    content: Dict[str, Any] = {}
    if message is not None:
        content["message"] = message
    if data is not None:
        content["data"] = data
    content.update(extra)
    return JSONResponse(status_code=status_code, content=serialize_objectid(content))

@app.exception_handler(BrandVizError)
async def brandviz_error_handler(request: Request, exc: BrandVizError):
    return respond(exc.message, exc.data, exc.status_code)

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = first.get("loc", ())
    message = "Invalid query parameters!" if location and location[0] == "query" else "Invalid request body!"
    detail = f"{'.'.join(str(part) for part in location[1:])} - {first.get('msg', '')}"
    return respond(message, detail, 400)

@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"message": "Internal server error", "error": str(exc)})

async def verify_qstash(request: Request, receiver: QStashReceiver = Depends(get_qstash_receiver)) -> bytes:
    """Verifica Upstash-Signature y devuelve el body crudo"""
    body = await request.body()
    try:
        receiver.verify(request.headers.get("Upstash-Signature"), body)
    except SignatureError as e:
        logger.warning(f"Rejected QStash request: {e}")
        raise UnauthorizedError("Invalid QStash signature")
    return body

# ============================================================================
# ENDPOINTS DE SALUD
# ============================================================================

@app.get("/")
async def root():
    """Endpoint raíz"""
    return {
        "message": "BrandViz API",
        "version": "1.0.0",
        "status": "running",
        "timestamp": utcnow().isoformat()
    }

@app.get("/health")
async def health_check():
    """Health check"""
    database_ok = await db_manager.health_check() if db_manager else False
    return JSONResponse(
        status_code=200 if database_ok else 503,
        content={
            "status": "healthy" if database_ok else "unhealthy",
            "database": "connected" if database_ok else "disconnected",
            "timestamp": utcnow().isoformat()
        }
    )

# ============================================================================
# ENDPOINTS DE AUTENTICACIÓN
# ============================================================================

@app.post("/api/register")
async def register(request: RegisterRequest, service: UserService = Depends(get_user_service)):
    """Registra un usuario y envía el email de verificación"""
    data = await service.register(request.full_name, request.email, request.password)
    return respond("User created successfully!", data, 201)

@app.post("/api/login")
async def login(request: LoginRequest, service: UserService = Depends(get_user_service)):
    data = await service.login(request.email, request.password)
    return respond("User fetched successfully!", data)

@app.get("/api/verify-email")
async def verify_email(
    verifyToken: Optional[str] = Query(None),
    id: Optional[str] = Query(None),
    service: UserService = Depends(get_user_service)
):
    """Verifica el email y redirige al onboarding"""
    await service.verify_email(verifyToken, id)
    return RedirectResponse(service.onboarding_url(id), status_code=307)

@app.post("/api/forgot-password")
async def forgot_password(request: ForgotPasswordRequest, service: UserService = Depends(get_user_service)):
    await service.forgot_password(request.email)
    return respond("Reset email sent!")

@app.post("/api/reset-password")
async def reset_password(request: ResetPasswordRequest, service: UserService = Depends(get_user_service)):
    await service.reset_password(request.token, request.id, request.newPassword)
    return respond("Password reset successfully! Redirecting to login...", status_code=201)

@app.post("/api/resend-verification-email")
async def resend_verification_email(
    request: ResendVerificationRequest,
    service: UserService = Depends(get_user_service)
):
    user = await service.resend_verification(request.userId)
    return respond("Email sent successfully!", user)

# ============================================================================
# ENDPOINTS DE USUARIOS
# ============================================================================

@app.get("/api/users/{user_id}")
async def get_user(
    user_id: str,
    claims: Dict[str, Any] = Depends(require_auth),
    service: UserService = Depends(get_user_service)
):
    require_object_id(user_id, "Invalid or missing userId!")
    ensure_self(claims, user_id)
    user = await service.get_user(user_id)
    return respond("User Details fetched successfully!", UserModel.from_dict(user).to_public_dict())

@app.put("/api/users/{user_id}")
async def update_user(
    user_id: str,
    request: UpdateUserRequest,
    claims: Dict[str, Any] = Depends(require_auth),
    service: UserService = Depends(get_user_service)
):
    require_object_id(user_id, "Invalid or missing userId!")
    ensure_self(claims, user_id)
    user = await service.update_user(user_id, request.data)
    return respond("User updated successfully!", user)

@app.get("/api/users/{user_id}/fetch-role")
async def fetch_role(
    user_id: str,
    brandId: Optional[str] = Query(None),
    claims: Dict[str, Any] = Depends(require_auth),
    service: UserService = Depends(get_user_service)
):
    require_object_id(user_id, "Invalid or missing userId!")
    require_object_id(brandId, "Invalid or missing brandId!")
    ensure_self(claims, user_id)
    role = await service.fetch_role(user_id, brandId)
    return respond("User role fetched successfully!", {"role": role})

# ============================================================================
# ENDPOINTS DE PLANES
# ============================================================================

@app.get("/api/plans")
async def list_plans(service: PlanService = Depends(get_plan_service)):
    plans = await service.list_plans()
    return respond("plans fetched successfully!", plans)

@app.post("/api/plans")
async def create_plan(
    request: CreatePlanRequest,
    claims: Dict[str, Any] = Depends(require_auth),
    service: PlanService = Depends(get_plan_service)
):
    plan = await service.create_plan({
        "plan_id": request.planId,
        "name": request.name,
        "description": request.description,
        "price": request.price,
        "max_brands": request.max_brands,
        "ai_models_supported": request.ai_models_supported,
        "features": request.features,
    })
    return respond("Plan created successfully!", plan, 201)

@app.put("/api/plans")
async def update_plan(
    request: UpdatePlanRequest,
    claims: Dict[str, Any] = Depends(require_auth),
    service: PlanService = Depends(get_plan_service)
):
    plan = await service.update_plan(request.id, request.data)
    return respond("Plan updated successfully!", plan)

# ============================================================================
# ENDPOINTS DE MARCAS
# ============================================================================

@app.get("/api/brand")
async def list_brands(
    user_id: Optional[str] = Query(None),
    claims: Dict[str, Any] = Depends(require_auth),
    user_svc: UserService = Depends(get_user_service),
    service: BrandService = Depends(get_brand_service)
):
    require_object_id(user_id, "Invalid user_id!")
    ensure_self(claims, user_id)
    await user_svc.get_user(user_id)
    brands = await service.list_user_brands(user_id)
    return respond("fetched all brands of the user successfully!", {"brands": brands})

@app.post("/api/brand")
async def create_brand(
    request: CreateBrandRequest,
    claims: Dict[str, Any] = Depends(require_auth),
    service: BrandService = Depends(get_brand_service)
):
    require_object_id(request.user_id, "Invalid request body!")
    ensure_self(claims, request.user_id)
    brand = await service.create_brand(request.user_id, request.model_dump(exclude={"user_id"}))
    return respond("Brand created successfully!", {"brand": brand}, 201)

@app.get("/api/brand/matrix-summary")
async def matrix_summary(
    userId: str = Query(..., min_length=1),
    period: Period = Query("30d"),
    claims: Dict[str, Any] = Depends(require_auth),
    service: AnalyticsService = Depends(get_analytics_service)
):
    ensure_self(claims, userId)
    data = await service.get_matrix_summary(userId, period)
    return respond("Matrix summary data fetched successfully!", data)

@app.get("/api/brand/{brand_id}")
async def get_brand(
    brand_id: str,
    claims: Dict[str, Any] = Depends(require_auth),
    service: BrandService = Depends(get_brand_service)
):
    require_object_id(brand_id, "Invalid or missing brandId!")
    await service.ensure_can_read(brand_id, claims.get("sub"))
    brand = await service.get_brand_with_owner(brand_id)
    return respond("Brand Details fetched successfully!", brand)

@app.put("/api/brand/{brand_id}")
async def update_brand(
    brand_id: str,
    request: UpdateBrandRequest,
    claims: Dict[str, Any] = Depends(require_auth),
    service: BrandService = Depends(get_brand_service)
):
    require_object_id(brand_id, "Invalid or missing brandId!")
    ensure_self(claims, request.user_id)
    brand = await service.update_brand(brand_id, request.user_id, request.model_dump(exclude={"user_id"}))
    return respond("Brand updated successfully!", {"brand": brand})

@app.delete("/api/brand/{brand_id}")
async def delete_brand(
    brand_id: str,
    userId: str = Query(..., min_length=1),
    claims: Dict[str, Any] = Depends(require_auth),
    service: BrandService = Depends(get_brand_service)
):
    require_object_id(brand_id, "Invalid or missing brandId!")
    ensure_self(claims, userId)
    data = await service.delete_brand(brand_id, userId)
    return respond("Brand deleted successfully!", data)

# ============================================================================
# ENDPOINTS DE EQUIPO
# ============================================================================

@app.post("/api/brand/{brand_id}/invites")
async def invite_members(
    brand_id: str,
    request: InviteRequest,
    claims: Dict[str, Any] = Depends(require_auth),
    service: TeamService = Depends(get_team_service)
):
    require_object_id(brand_id, "Invalid or missing brandId!")
    ensure_self(claims, request.user_id)
    results = await service.invite_members(
        brand_id,
        request.user_id,
        [entry.model_dump() for entry in request.emails],
        request.ttl_hours or 24 * 7,
    )
    return respond(data=results, status_code=201)

@app.patch("/api/brand/{brand_id}/invites")
async def resend_invite(
    brand_id: str,
    request: ResendInviteRequest,
    claims: Dict[str, Any] = Depends(require_auth),
    service: TeamService = Depends(get_team_service)
):
    require_object_id(brand_id, "Invalid or missing brandId!")
    ensure_self(claims, request.user_id)
    data = await service.resend_invite(brand_id, request.user_id, request.inviteId, request.ttl_hours or 24 * 7)
    return respond("Invitation email has been sent!", data)

@app.post("/api/brand/{brand_id}/accept-invite")
async def accept_invite(
    brand_id: str,
    request: AcceptInviteRequest,
    service: TeamService = Depends(get_team_service)
):
    """Pública: el invitado puede no tener cuenta todavía"""
    require_object_id(brand_id, "Invalid or missing brandId!")
    data = await service.accept_invite(
        brand_id,
        request.invitedBy,
        request.verifyToken,
        request.email,
        request.signup.model_dump() if request.signup else None,
    )
    return respond("Invite accepted. Membership activated.", data)

@app.get("/api/brand/{brand_id}/members")
async def list_members(
    brand_id: str,
    claims: Dict[str, Any] = Depends(require_auth),
    brands: BrandService = Depends(get_brand_service),
    service: TeamService = Depends(get_team_service)
):
    require_object_id(brand_id, "Invalid or missing brandId!")
    await brands.ensure_can_read(brand_id, claims.get("sub"))
    data = await service.list_members(brand_id)
    return respond("Brand members fetched successfully!", data)

@app.delete("/api/brand/{brand_id}/members")
async def remove_member(
    brand_id: str,
    request: RemoveMemberRequest,
    claims: Dict[str, Any] = Depends(require_auth),
    service: TeamService = Depends(get_team_service)
):
    require_object_id(brand_id, "Invalid or missing brandId!")
    ensure_self(claims, request.userIdRequesting)
    data = await service.remove_member(
        brand_id, request.memberIdToRemove, request.userIdRequesting, request.memberType
    )
    return respond("Member removed successfully!", data)

# ============================================================================
# ENDPOINTS DE ANALYTICS
# ============================================================================

@app.get("/api/brand/{brand_id}/dashboard")
async def get_dashboard(
    brand_id: str,
    userId: str = Query(..., min_length=1),
    period: Period = Query("7d"),
    model: Literal["all", "ChatGPT", "Claude", "Gemini"] = Query("all"),
    stage: Literal["all", "TOFU", "MOFU", "BOFU", "EVFU"] = Query("all"),
    claims: Dict[str, Any] = Depends(require_auth),
    service: AnalyticsService = Depends(get_analytics_service)
):
    require_object_id(brand_id, "Invalid or missing brandId!")
    ensure_self(claims, userId)
    data = await service.get_dashboard(brand_id, userId, period, model, stage)
    return respond("Dashboard data fetched successfully!", data)

@app.get("/api/brand/{brand_id}/metrics")
async def get_metrics(
    brand_id: str,
    userId: str = Query(..., min_length=1),
    period: Period = Query("30d"),
    model: Optional[ModelName] = Query(None),
    stage: Optional[StageName] = Query(None),
    claims: Dict[str, Any] = Depends(require_auth),
    service: AnalyticsService = Depends(get_analytics_service)
):
    """Métricas de funnel, serie diaria e insights del período"""
    require_object_id(brand_id, "Invalid or missing brandId!")
    ensure_self(claims, userId)
    data = await service.get_metrics(brand_id, userId, period, model, stage)
    return respond("Metrics fetched successfully!", data)

@app.get("/api/brand/{brand_id}/matrix")
async def get_matrix(
    brand_id: str,
    userId: str = Query(..., min_length=1),
    period: Period = Query("7d"),
    model: Literal["all", "ChatGPT", "Claude", "Gemini"] = Query("all"),
    stage: Literal["all", "TOFU", "MOFU", "BOFU", "EVFU"] = Query("all"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    claims: Dict[str, Any] = Depends(require_auth),
    service: AnalyticsService = Depends(get_analytics_service)
):
    require_object_id(brand_id, "Invalid or missing brandId!")
    ensure_self(claims, userId)
    message, data = await service.get_matrix(brand_id, userId, period, model, stage, page, limit)
    return respond(message, data)

@app.get("/api/brand/{brand_id}/logs")
async def list_logs(
    brand_id: str,
    userId: str = Query(..., min_length=1),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    model: Literal["all", "ChatGPT", "Claude", "Gemini"] = Query("all"),
    stage: Literal["all", "TOFU", "MOFU", "BOFU", "EVFU"] = Query("all"),
    status: Literal["all", "success", "error", "warning"] = Query("all"),
    search: str = Query(""),
    sortBy: Literal["createdAt", "overallScore", "weightedScore", "successRate"] = Query("createdAt"),
    sortOrder: Literal["asc", "desc"] = Query("desc"),
    claims: Dict[str, Any] = Depends(require_auth),
    service: AnalyticsService = Depends(get_analytics_service)
):
    require_object_id(brand_id, "Invalid or missing brandId!")
    ensure_self(claims, userId)
    data = await service.list_logs(brand_id, userId, page, limit, model, stage, status, search, sortBy, sortOrder)
    return respond("Logs fetched successfully!", data)

@app.post("/api/brand/{brand_id}/logs")
async def trigger_analysis(
    brand_id: str,
    request: TriggerAnalysisRequest,
    background_tasks: BackgroundTasks,
    claims: Dict[str, Any] = Depends(require_auth),
    service: AnalyticsService = Depends(get_analytics_service),
    queue: AnalysisQueueService = Depends(get_queue_service),
    qstash: QStashService = Depends(get_qstash_service)
):
    """Dispara un análisis; el procesamiento sigue después de responder"""
    require_object_id(brand_id, "Invalid or missing brandId!")
    ensure_self(claims, request.userId)
    job, data = await service.trigger_analysis(brand_id, request.userId, request.models, request.stages)

    scheduled = False
    if settings.qstash.token:
        try:
            await qstash.schedule_analysis_job(job)
            scheduled = True
        except Exception as e:
            logger.error(f"QStash scheduling failed for {job.analysis_id}, running in process: {e}")
    if not scheduled:
        background_tasks.add_task(queue.process_analysis_job, job)

    return respond(
        "Analysis started successfully! You will receive an email notification once the analysis is complete.",
        data,
        success=True,
    )

@app.get("/api/brand/{brand_id}/logs/{log_id}")
async def get_log(
    brand_id: str,
    log_id: str,
    userId: str = Query(..., min_length=1),
    claims: Dict[str, Any] = Depends(require_auth),
    service: AnalyticsService = Depends(get_analytics_service)
):
    require_object_id(log_id, "Invalid or missing logId!")
    ensure_self(claims, userId)
    data = await service.get_log(brand_id, log_id, userId)
    return respond("Log details fetched successfully!", data)

@app.delete("/api/brand/{brand_id}/logs/{log_id}")
async def delete_log(
    brand_id: str,
    log_id: str,
    userId: str = Query(..., min_length=1),
    claims: Dict[str, Any] = Depends(require_auth),
    service: AnalyticsService = Depends(get_analytics_service)
):
    require_object_id(log_id, "Invalid or missing logId!")
    ensure_self(claims, userId)
    data = await service.delete_log(brand_id, log_id, userId)
    return respond("Log entry deleted successfully!", data)

@app.get("/api/brand/{brand_id}/analysis-status")
async def analysis_status(
    brand_id: str,
    userId: str = Query(..., min_length=1),
    claims: Dict[str, Any] = Depends(require_auth),
    service: AnalyticsService = Depends(get_analytics_service)
):
    require_object_id(brand_id, "Invalid or missing brandId!")
    ensure_self(claims, userId)
    data = await service.get_analysis_status(brand_id, userId)
    return respond(data=data, success=True)

@app.post("/api/analysis/estimate")
async def estimate_analysis(
    request: EstimateRequest,
    claims: Dict[str, Any] = Depends(require_auth),
    service: AnalyticsService = Depends(get_analytics_service)
):
    ensure_self(claims, request.userId)
    data = await service.estimate(request.userId, request.models)
    return respond(data=data, success=True)

# ============================================================================
# ENDPOINTS DE CRÉDITOS Y PAGOS
# ============================================================================

@app.get("/api/credits/balance")
async def credit_balance(
    userId: str = Query(..., min_length=1),
    claims: Dict[str, Any] = Depends(require_auth),
    service: CreditService = Depends(get_credit_service)
):
    require_object_id(userId, "Invalid userId format!")
    ensure_self(claims, userId)
    stats = await service.get_credit_stats(userId)
    return respond(data=stats, success=True)

@app.get("/api/credits/history")
async def credit_history(
    userId: str = Query(..., min_length=1),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    type: Optional[str] = Query(None),
    startDate: Optional[str] = Query(None),
    endDate: Optional[str] = Query(None),
    claims: Dict[str, Any] = Depends(require_auth),
    service: CreditService = Depends(get_credit_service)
):
    require_object_id(userId, "Invalid userId format!")
    ensure_self(claims, userId)
    skip = (page - 1) * limit
    filters = {"type": type, "start_date": startDate, "end_date": endDate}
    try:
        transactions = await service.get_credit_history(userId, limit, skip, filters)
        total = await service.get_credit_history_count(userId, filters)
    except ValueError:
        raise BrandVizError("Invalid query parameters!")

    total_pages = -(-total // limit)
    return respond("Transaction history fetched successfully!", {
        "transactions": transactions,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": total_pages,
            "hasMore": page < total_pages,
            "hasPrevious": page > 1,
        },
        "summary": {
            "totalTransactions": total,
            "currentPage": page,
            "totalPages": total_pages,
            "showingFrom": skip + 1,
            "showingTo": min(skip + limit, total),
        },
    })

@app.get("/api/credits/packages")
async def credit_packages(service: StripeService = Depends(get_stripe_service)):
    return respond(data=service.list_packages(), success=True)

@app.post("/api/credits/purchase")
async def purchase_credits(
    request: PurchaseCreditsRequest,
    claims: Dict[str, Any] = Depends(require_auth),
    user_svc: UserService = Depends(get_user_service),
    service: StripeService = Depends(get_stripe_service)
):
    require_object_id(request.userId, "Invalid userId format!")
    ensure_self(claims, request.userId)
    user = await user_svc.users_collection.find_one({"_id": safe_objectid(request.userId)})
    if not user:
        raise NotFoundError("User not found!")

    package = service.get_package(request.packageId)
    if package is None:
        raise BrandVizError("Invalid credit package!")

    if request.paymentMethod == "checkout":
        if not request.successUrl or not request.cancelUrl:
            raise BrandVizError("Success URL and Cancel URL are required for checkout method!")
        session = await service.create_checkout_session(
            request.userId, package.id, user["email"], user.get("full_name", ""),
            request.successUrl, request.cancelUrl,
        )
        return respond("Checkout session created successfully!", {
            "sessionId": session["session_id"],
            "url": session["url"],
            "package": package.to_public_dict(),
        }, success=True)

    intent = await service.create_payment_intent(request.userId, package.id, user["email"], user.get("full_name", ""))
    return respond("Payment intent created successfully!", {
        "clientSecret": intent["client_secret"],
        "paymentIntentId": intent["payment_intent_id"],
        "amount": intent["amount"],
        "credits": intent["credits"],
        "package": package.to_public_dict(),
    }, success=True)

@app.post("/api/webhooks/stripe")
async def stripe_webhook(request: Request, service: StripeService = Depends(get_stripe_service)):
    """Acredita compras confirmadas por Stripe"""
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    if not signature:
        return PlainTextResponse("Missing stripe-signature header", status_code=400)
    if not settings.stripe.webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not set")
        return PlainTextResponse("Webhook secret not configured", status_code=500)

    try:
        event = service.verify_webhook_signature(payload, signature)
    except Exception as e:
        logger.error(f"Webhook signature verification failed: {e}")
        return PlainTextResponse("Invalid signature", status_code=400)

    event_type = event["type"]
    data_object = event["data"]["object"]

    if event_type == "payment_intent.succeeded":
        logger.info(f"Payment succeeded: {data_object['id']}")
        try:
            await service.handle_payment_success(data_object)
        except Exception as e:
            logger.error(f"Error handling payment success: {e}")
            return PlainTextResponse("Error processing payment", status_code=500)
    elif event_type == "checkout.session.completed":
        logger.info(f"Checkout session completed: {data_object['id']}")
        try:
            await service.handle_checkout_success(data_object)
        except Exception as e:
            logger.error(f"Error handling checkout success: {e}")
            return PlainTextResponse("Error processing checkout", status_code=500)
    elif event_type == "payment_intent.payment_failed":
        logger.info(f"Payment failed: {data_object['id']}")
    elif event_type == "charge.dispute.created":
        logger.info(f"Dispute created: {data_object['id']}")
    else:
        logger.info(f"Unhandled event type: {event_type}")

    return PlainTextResponse("Webhook processed successfully", status_code=200)

# ============================================================================
# ENDPOINTS DE JOBS (QSTASH Y CRON)
# ============================================================================

def _json(body: bytes) -> Dict[str, Any]:
    return json.loads(body or b"{}")

def job_error(error: Exception, status_code: int = 500) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": str(error)})

@app.post("/api/qstash/process-analysis")
async def qstash_process_analysis(
    body: bytes = Depends(verify_qstash),
    service: BackgroundAnalysisService = Depends(get_background_service)
):
    try:
        job = AnalysisJob.from_dict(_json(body))
        logger.info(f"Processing analysis job {job.analysis_id} for brand {job.brand_id}")
        await service.run_analysis_in_background(job)
        return {"success": True, "message": f"Analysis job {job.analysis_id} processed successfully",
                "analysisId": job.analysis_id}
    except Exception as e:
        logger.error(f"Error processing analysis job via QStash: {e}")
        return job_error(e)

@app.post("/api/qstash/check-stuck-analyses")
async def qstash_check_stuck(
    body: bytes = Depends(verify_qstash),
    service: QStashService = Depends(get_qstash_service)
):
    try:
        processed = await service.process_stuck_analysis_check()
        return {"success": True, "processed": processed, "message": f"Processed {processed} stuck analyses",
                "timestamp": utcnow().isoformat()}
    except Exception as e:
        logger.error(f"Error in stuck analysis check via QStash: {e}")
        return JSONResponse(status_code=500, content={
            "success": False, "error": str(e), "timestamp": utcnow().isoformat()
        })

@app.post("/api/qstash/resume-analysis")
async def qstash_resume_analysis(
    body: bytes = Depends(verify_qstash),
    service: BackgroundAnalysisService = Depends(get_background_service)
):
    try:
        analysis_id = _json(body).get("analysisId")
        if not analysis_id:
            return job_error(ValueError("analysisId is required"), 400)

        status = await service.statuses_collection.find_one({"analysis_id": analysis_id, "status": "running"})
        if not status:
            return {"success": True, "message": f"Analysis {analysis_id} not found or not running",
                    "analysisId": analysis_id}

        await service.run_analysis_in_background(AnalysisJob.from_status(status))
        return {"success": True, "message": f"Analysis {analysis_id} resumed successfully", "analysisId": analysis_id}
    except Exception as e:
        logger.error(f"Error resuming analysis via QStash: {e}")
        return job_error(e)

@app.post("/api/qstash/status-update")
async def qstash_status_update(
    body: bytes = Depends(verify_qstash),
    service: BackgroundAnalysisService = Depends(get_background_service)
):
    try:
        payload = _json(body)
        analysis_id, user_id = payload.get("analysisId"), payload.get("userId")
        if not analysis_id or not user_id:
            return job_error(ValueError("analysisId and userId are required"), 400)

        status = await service.statuses_collection.find_one(
            {"analysis_id": analysis_id, "user_id": safe_objectid(user_id)}
        )
        if not status:
            return job_error(LookupError("Analysis not found"), 404)

        return JSONResponse(content=serialize_objectid({"success": True, "data": {
            "analysisId": status["analysis_id"],
            "status": status.get("status"),
            "progress": status.get("progress"),
            "startedAt": status.get("started_at"),
            "completedAt": status.get("completed_at"),
            "errorMessage": status.get("error_message"),
        }}))
    except Exception as e:
        logger.error(f"Error in status update webhook: {e}")
        return job_error(e)

@app.api_route("/api/qstash/init", methods=["GET", "POST"])
async def qstash_init(request: Request, service: QStashService = Depends(get_qstash_service)):
    """Arranca el ciclo de chequeo de análisis trabados"""
    expected = settings.qstash.init_secret
    if expected and request.headers.get("authorization") != f"Bearer {expected}":
        logger.info("Unauthorized QStash init request")
        return JSONResponse(status_code=401, content={"message": "Unauthorized"})
    try:
        message_id = await service.schedule_stuck_analysis_check(120)
        return {"success": True, "message": "QStash stuck analysis checking initialized",
                "messageId": message_id, "nextCheckIn": "2 minutes"}
    except Exception as e:
        logger.error(f"Error initializing QStash stuck analysis checking: {e}")
        return job_error(e)

@app.post("/api/run-analysis")
async def run_analysis_workflow(
    body: bytes = Depends(verify_qstash),
    service: WorkflowService = Depends(get_workflow_service)
):
    """Workflow par por par; un 500 hace que QStash reintente y los pares completos se saltean"""
    try:
        job = AnalysisJob.from_dict(_json(body))
        result = await service.run(job)
        if result is None:
            return {"success": True, "message": f"Analysis {job.analysis_id} skipped"}
        return result
    except Exception as e:
        logger.error(f"Analysis workflow failed: {e}")
        return job_error(e)

@app.get("/api/cron/process-pending-analyses")
async def cron_process_pending(
    request: Request,
    service: AnalysisQueueService = Depends(get_queue_service),
    locks: CronLockService = Depends(get_cron_lock_service)
):
    if request.headers.get("authorization") != f"Bearer {settings.app.cron_secret}" or not settings.app.cron_secret:
        return PlainTextResponse("Unauthorized", status_code=401)

    instance_id = await locks.acquire_lock("process-pending-analyses")
    if instance_id is None:
        return {"success": True, "processed": 0, "message": "Another instance is already processing"}
    try:
        logger.info("Starting cron job to process stuck analyses")
        processed = await service.resume_stuck_analyses()
        return {"success": True, "processed": processed, "message": f"Processed {processed} stuck analyses"}
    except Exception as e:
        logger.error(f"Cron job error: {e}")
        return job_error(e)
    finally:
        await locks.release_lock("process-pending-analyses", instance_id)
