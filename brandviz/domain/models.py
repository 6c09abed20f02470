"""
Modelos de dominio para la aplicación
Cada modelo se persiste como documento en MongoDB (to_dict / from_dict)
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Any
from bson import ObjectId

from .enums import (
    AIModel, AnalysisStage, AnalysisRunStatus, PairStatus, Role, MembershipStatus,
    InviteStatus, TransactionType, TriggerType, ResultStatus, Sentiment
)


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


@dataclass
class UserModel:
    """Usuario de la plataforma"""
    _id: Optional[ObjectId] = None
    full_name: str = ""
    email: str = ""
    password: Optional[str] = None  # hash bcrypt
    is_verified: bool = False
    number_of_retries: Optional[int] = None
    verify_token: Optional[str] = None  # sha256 del token enviado por email
    verify_token_expire: Optional[datetime] = None
    reset_password_token: Optional[str] = None
    reset_password_expire: Optional[datetime] = None
    current_onboarding_step: Optional[str] = None
    plan_id: Optional[ObjectId] = None

    # Créditos
    credits_balance: int = 0
    total_credits_purchased: int = 0
    total_credits_used: int = 0
    stripe_customer_id: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convierte el modelo a diccionario para MongoDB"""
        data = {}
        if self._id:
            data["_id"] = self._id
        data.update({
            "full_name": self.full_name,
            "email": self.email,
            "is_verified": self.is_verified,
            "current_onboarding_step": self.current_onboarding_step,
            "credits_balance": self.credits_balance,
            "total_credits_purchased": self.total_credits_purchased,
            "total_credits_used": self.total_credits_used,
        })
        optional_fields = [
            "password", "number_of_retries", "verify_token", "verify_token_expire",
            "reset_password_token", "reset_password_expire", "plan_id",
            "stripe_customer_id", "created_at", "updated_at"
        ]
        for field_name in optional_fields:
            value = getattr(self, field_name)
            if value is not None:
                data[field_name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UserModel':
        """Crea un UserModel desde un documento de MongoDB"""
        return cls(
            _id=data.get("_id"),
            full_name=data.get("full_name", ""),
            email=data.get("email", ""),
            password=data.get("password"),
            is_verified=data.get("is_verified", False),
            number_of_retries=data.get("number_of_retries"),
            verify_token=data.get("verify_token"),
            verify_token_expire=data.get("verify_token_expire"),
            reset_password_token=data.get("reset_password_token"),
            reset_password_expire=data.get("reset_password_expire"),
            current_onboarding_step=data.get("current_onboarding_step"),
            plan_id=data.get("plan_id"),
            credits_balance=data.get("credits_balance", 0) or 0,
            total_credits_purchased=data.get("total_credits_purchased", 0) or 0,
            total_credits_used=data.get("total_credits_used", 0) or 0,
            stripe_customer_id=data.get("stripe_customer_id"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )

    def to_public_dict(self) -> Dict[str, Any]:
        """Representación sin secretos para respuestas de la API"""
        data = self.to_dict()
        for secret in ("password", "verify_token", "reset_password_token"):
            data.pop(secret, None)
        return data


@dataclass
class PlanModel:
    """Plan de suscripción"""
    _id: Optional[ObjectId] = None
    plan_id: str = ""
    name: str = ""
    description: str = ""
    price: float = 0
    max_brands: Optional[int] = None
    ai_models_supported: Optional[int] = None
    features: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"_id": self._id} if self._id else {}
        data.update(_drop_none({
            "plan_id": self.plan_id,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "max_brands": self.max_brands,
            "ai_models_supported": self.ai_models_supported,
            "features": self.features,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PlanModel':
        return cls(
            _id=data.get("_id"),
            plan_id=data.get("plan_id", ""),
            name=data.get("name", ""),
            description=data.get("description", ""),
            price=data.get("price", 0),
            max_brands=data.get("max_brands"),
            ai_models_supported=data.get("ai_models_supported"),
            features=data.get("features") or [],
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class BrandModel:
    """Marca monitoreada. deleted_at marca el borrado lógico"""
    _id: Optional[ObjectId] = None
    owner_id: Optional[ObjectId] = None
    name: str = ""
    category: Optional[str] = None
    region: Optional[str] = None
    use_case: Optional[str] = None
    target_audience: List[str] = field(default_factory=list)
    competitors: List[str] = field(default_factory=list)
    feature_list: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"_id": self._id} if self._id else {}
        data.update({
            "owner_id": self.owner_id,
            "name": self.name,
            "category": self.category,
            "region": self.region,
            "use_case": self.use_case,
            "target_audience": self.target_audience,
            "competitors": self.competitors,
            "feature_list": self.feature_list,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            # None se guarda explícito para poder filtrar {"deleted_at": None}
            "deleted_at": self.deleted_at,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BrandModel':
        return cls(
            _id=data.get("_id"),
            owner_id=data.get("owner_id"),
            name=data.get("name", ""),
            category=data.get("category"),
            region=data.get("region"),
            use_case=data.get("use_case"),
            target_audience=data.get("target_audience") or [],
            competitors=data.get("competitors") or [],
            feature_list=data.get("feature_list") or [],
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            deleted_at=data.get("deleted_at"),
        )


@dataclass
class MembershipModel:
    """Relación usuario-marca con rol"""
    _id: Optional[ObjectId] = None
    brand_id: Optional[ObjectId] = None
    user_id: Optional[ObjectId] = None
    role: Role = Role.VIEWER
    status: MembershipStatus = MembershipStatus.ACTIVE
    created_by: Optional[ObjectId] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"_id": self._id} if self._id else {}
        data.update(_drop_none({
            "brand_id": self.brand_id,
            "user_id": self.user_id,
            "role": self.role.value,
            "status": self.status.value,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MembershipModel':
        return cls(
            _id=data.get("_id"),
            brand_id=data.get("brand_id"),
            user_id=data.get("user_id"),
            role=Role(data.get("role", "viewer")),
            status=MembershipStatus(data.get("status", "active")),
            created_by=data.get("created_by"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class InviteModel:
    """Invitación pendiente a una marca"""
    _id: Optional[ObjectId] = None
    brand_id: Optional[ObjectId] = None
    email: str = ""
    role: Role = Role.VIEWER
    invited_by: Optional[ObjectId] = None
    verify_token: Optional[str] = None  # sha256 del token
    verify_token_expire: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    status: InviteStatus = InviteStatus.PENDING
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"_id": self._id} if self._id else {}
        data.update({
            "brand_id": self.brand_id,
            "email": self.email.lower(),
            "role": self.role.value,
            "invited_by": self.invited_by,
            "verify_token": self.verify_token,
            "verify_token_expire": self.verify_token_expire,
            "accepted_at": self.accepted_at,
            "revoked_at": self.revoked_at,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InviteModel':
        return cls(
            _id=data.get("_id"),
            brand_id=data.get("brand_id"),
            email=data.get("email", ""),
            role=Role(data.get("role", "viewer")),
            invited_by=data.get("invited_by"),
            verify_token=data.get("verify_token"),
            verify_token_expire=data.get("verify_token_expire"),
            accepted_at=data.get("accepted_at"),
            revoked_at=data.get("revoked_at"),
            status=InviteStatus(data.get("status", "pending")),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class CreditTransactionModel:
    """Movimiento del ledger de créditos. amount es negativo en consumos"""
    _id: Optional[ObjectId] = None
    user_id: Optional[ObjectId] = None
    type: TransactionType = TransactionType.USAGE
    amount: int = 0
    description: str = ""
    analysis_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"_id": self._id} if self._id else {}
        data.update(_drop_none({
            "user_id": self.user_id,
            "type": self.type.value,
            "amount": self.amount,
            "description": self.description,
            "analysis_id": self.analysis_id,
            "stripe_payment_intent_id": self.stripe_payment_intent_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CreditTransactionModel':
        return cls(
            _id=data.get("_id"),
            user_id=data.get("user_id"),
            type=TransactionType(data.get("type", "usage")),
            amount=data.get("amount", 0),
            description=data.get("description", ""),
            analysis_id=data.get("analysis_id"),
            stripe_payment_intent_id=data.get("stripe_payment_intent_id"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class SentimentModel:
    """Sentimiento con distribución porcentual"""
    overall: Sentiment = Sentiment.NEUTRAL
    confidence: float = 0
    positive: float = 0
    neutral: float = 0
    negative: float = 0
    strongly_positive: float = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall": self.overall.value,
            "confidence": self.confidence,
            "distribution": {
                "positive": self.positive,
                "neutral": self.neutral,
                "negative": self.negative,
                "strongly_positive": self.strongly_positive,
            },
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SentimentModel':
        data = data or {}
        distribution = data.get("distribution") or {}
        overall = data.get("overall", "neutral")
        return cls(
            overall=Sentiment(overall) if overall in [s.value for s in Sentiment] else Sentiment.NEUTRAL,
            confidence=data.get("confidence", 0) or 0,
            positive=distribution.get("positive", 0) or 0,
            neutral=distribution.get("neutral", 0) or 0,
            negative=distribution.get("negative", 0) or 0,
            strongly_positive=distribution.get("strongly_positive", 0) or 0,
        )


@dataclass
class PromptResultModel:
    """Resultado de un prompt individual dentro de un análisis"""
    prompt_id: str = "unknown"
    prompt_text: str = "No prompt text"
    score: float = 0
    weighted_score: float = 0
    mention_position: int = 0
    response: str = "No response"
    response_time: float = 0
    sentiment: SentimentModel = field(default_factory=SentimentModel)
    status: ResultStatus = ResultStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prompt_id": self.prompt_id,
            "prompt_text": self.prompt_text,
            "score": self.score,
            "weighted_score": self.weighted_score,
            "mention_position": self.mention_position,
            "response": self.response,
            "response_time": self.response_time,
            "sentiment": self.sentiment.to_dict(),
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PromptResultModel':
        return cls(
            prompt_id=data.get("prompt_id", "unknown"),
            prompt_text=data.get("prompt_text", "No prompt text"),
            score=data.get("score", 0),
            weighted_score=data.get("weighted_score", 0),
            mention_position=data.get("mention_position", 0),
            response=data.get("response") or "No response",
            response_time=data.get("response_time", 0),
            sentiment=SentimentModel.from_dict(data.get("sentiment")),
            status=ResultStatus(data.get("status", "success")),
        )


@dataclass
class MultiPromptAnalysisModel:
    """Análisis agregado de un modelo en una etapa del funnel"""
    _id: Optional[ObjectId] = None
    brand_id: Optional[ObjectId] = None
    model: AIModel = AIModel.CHATGPT
    stage: AnalysisStage = AnalysisStage.TOFU
    overall_score: float = 0
    weighted_score: float = 0
    total_response_time: float = 0
    success_rate: float = 0
    aggregated_sentiment: SentimentModel = field(default_factory=SentimentModel)
    prompt_results: List[PromptResultModel] = field(default_factory=list)

    # Metadata
    user_id: Optional[ObjectId] = None
    trigger_type: TriggerType = TriggerType.MANUAL
    version: str = "2.0"
    total_prompts: int = 0
    successful_prompts: int = 0

    status: ResultStatus = ResultStatus.SUCCESS
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"_id": self._id} if self._id else {}
        data.update({
            "brand_id": self.brand_id,
            "model": self.model.value,
            "stage": self.stage.value,
            "overall_score": self.overall_score,
            "weighted_score": self.weighted_score,
            "total_response_time": self.total_response_time,
            "success_rate": self.success_rate,
            "aggregated_sentiment": self.aggregated_sentiment.to_dict(),
            "prompt_results": [result.to_dict() for result in self.prompt_results],
            "metadata": {
                "user_id": self.user_id,
                "trigger_type": self.trigger_type.value,
                "version": self.version,
                "total_prompts": self.total_prompts,
                "successful_prompts": self.successful_prompts,
            },
            "status": self.status.value,
        })
        if self.created_at:
            data["created_at"] = self.created_at
        if self.updated_at:
            data["updated_at"] = self.updated_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MultiPromptAnalysisModel':
        metadata = data.get("metadata") or {}
        return cls(
            _id=data.get("_id"),
            brand_id=data.get("brand_id"),
            model=AIModel(data["model"]),
            stage=AnalysisStage(data["stage"]),
            overall_score=data.get("overall_score", 0),
            weighted_score=data.get("weighted_score", 0),
            total_response_time=data.get("total_response_time", 0),
            success_rate=data.get("success_rate", 0),
            aggregated_sentiment=SentimentModel.from_dict(data.get("aggregated_sentiment")),
            prompt_results=[PromptResultModel.from_dict(r) for r in data.get("prompt_results", [])],
            user_id=metadata.get("user_id"),
            trigger_type=TriggerType(metadata.get("trigger_type", "manual")),
            version=metadata.get("version", "2.0"),
            total_prompts=metadata.get("total_prompts", 0),
            successful_prompts=metadata.get("successful_prompts", 0),
            status=ResultStatus(data.get("status", "success")),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class AnalysisStatusModel:
    """Estado de una ejecución de análisis en background"""
    _id: Optional[ObjectId] = None
    brand_id: Optional[ObjectId] = None
    user_id: Optional[ObjectId] = None
    analysis_id: str = ""
    status: AnalysisRunStatus = AnalysisRunStatus.RUNNING
    models: List[str] = field(default_factory=list)
    stages: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    total_tasks: int = 0
    completed_tasks: int = 0
    current_task: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"_id": self._id} if self._id else {}
        data.update(_drop_none({
            "brand_id": self.brand_id,
            "user_id": self.user_id,
            "analysis_id": self.analysis_id,
            "status": self.status.value,
            "models": self.models,
            "stages": self.stages,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error_message": self.error_message,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }))
        data["progress"] = _drop_none({
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "current_task": self.current_task,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AnalysisStatusModel':
        progress = data.get("progress") or {}
        return cls(
            _id=data.get("_id"),
            brand_id=data.get("brand_id"),
            user_id=data.get("user_id"),
            analysis_id=data.get("analysis_id", ""),
            status=AnalysisRunStatus(data.get("status", "running")),
            models=data.get("models") or [],
            stages=data.get("stages") or [],
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            error_message=data.get("error_message"),
            total_tasks=progress.get("total_tasks", 0),
            completed_tasks=progress.get("completed_tasks", 0),
            current_task=progress.get("current_task"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class AnalysisPairModel:
    """Par modelo/etapa dentro de un análisis del workflow"""
    _id: Optional[ObjectId] = None
    analysis_id: str = ""
    brand_id: Optional[ObjectId] = None
    user_id: Optional[ObjectId] = None
    model: AIModel = AIModel.CHATGPT
    stage: AnalysisStage = AnalysisStage.TOFU
    status: PairStatus = PairStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"_id": self._id} if self._id else {}
        data.update(_drop_none({
            "analysis_id": self.analysis_id,
            "brand_id": self.brand_id,
            "user_id": self.user_id,
            "model": self.model.value,
            "stage": self.stage.value,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error_message": self.error_message,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AnalysisPairModel':
        return cls(
            _id=data.get("_id"),
            analysis_id=data.get("analysis_id", ""),
            brand_id=data.get("brand_id"),
            user_id=data.get("user_id"),
            model=AIModel(data["model"]),
            stage=AnalysisStage(data["stage"]),
            status=PairStatus(data.get("status", "pending")),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            error_message=data.get("error_message"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class CronLockModel:
    """Lock distribuido. _id es el nombre del lock"""
    _id: str = ""
    locked_at: Optional[datetime] = None
    locked_by: str = ""
    expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self._id,
            "locked_at": self.locked_at,
            "locked_by": self.locked_by,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CronLockModel':
        return cls(
            _id=data.get("_id", ""),
            locked_at=data.get("locked_at"),
            locked_by=data.get("locked_by", ""),
            expires_at=data.get("expires_at"),
        )
