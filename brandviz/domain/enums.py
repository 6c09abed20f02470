"""
Enums para el dominio de la aplicación
"""

from enum import Enum


class AIModel(Enum):
    """Modelos de lenguaje analizados"""
    CHATGPT = "ChatGPT"
    CLAUDE = "Claude"
    GEMINI = "Gemini"

    @classmethod
    def values(cls) -> list:
        return [m.value for m in cls]


class AnalysisStage(Enum):
    """Etapas del funnel de marketing"""
    TOFU = "TOFU"  # Top of funnel: awareness
    MOFU = "MOFU"  # Middle of funnel: consideration
    BOFU = "BOFU"  # Bottom of funnel: decision
    EVFU = "EVFU"  # End of funnel: advocacy

    @classmethod
    def values(cls) -> list:
        return [s.value for s in cls]


class Sentiment(Enum):
    """Sentimiento general de una respuesta"""
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class ResultStatus(Enum):
    """Estado de un resultado de análisis"""
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"


class AnalysisRunStatus(Enum):
    """Estados de una ejecución de análisis en background"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PairStatus(Enum):
    """Estados de un par modelo/etapa del workflow"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Role(Enum):
    """Roles dentro de una marca"""
    OWNER = "owner"
    ADMIN = "admin"
    VIEWER = "viewer"

    @classmethod
    def managers(cls) -> list:
        """Roles que pueden administrar la marca"""
        return [cls.OWNER.value, cls.ADMIN.value]


class MembershipStatus(Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class InviteStatus(Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    REVOKED = "revoked"


class TransactionType(Enum):
    """Tipos de movimientos de créditos"""
    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"
    BONUS = "bonus"


class TriggerType(Enum):
    """Origen de un análisis"""
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"


class OnboardingStep(Enum):
    """Pasos de onboarding de un usuario"""
    VERIFY_EMAIL = "VERIFY_EMAIL"
    CREATE_BRAND = "CREATE_BRAND"
