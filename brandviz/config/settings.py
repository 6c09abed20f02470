"""
Configuración centralizada de BrandViz.
Todas las variables de entorno se leen aca (Single Source of Truth)
"""

import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

# Cargar variables de entorno
load_dotenv()


@dataclass(frozen=True)
class DatabaseConfig:
    """Configuración de base de datos MongoDB"""
    uri: str = os.getenv("DB_URL", os.getenv("MONGO_URI", "mongodb://localhost:27017"))
    database: str = os.getenv("DATABASE_NAME", "brandviz")
    users_collection: str = os.getenv("MONGO_COLL_USERS", "users")
    plans_collection: str = os.getenv("MONGO_COLL_PLANS", "plans")
    brands_collection: str = os.getenv("MONGO_COLL_BRANDS", "brands")
    memberships_collection: str = os.getenv("MONGO_COLL_MEMBERSHIPS", "memberships")
    invites_collection: str = os.getenv("MONGO_COLL_INVITES", "invites")
    transactions_collection: str = os.getenv("MONGO_COLL_TRANSACTIONS", "credit_transactions")
    analyses_collection: str = os.getenv("MONGO_COLL_ANALYSES", "multi_prompt_analyses")
    statuses_collection: str = os.getenv("MONGO_COLL_STATUSES", "analysis_statuses")
    pairs_collection: str = os.getenv("MONGO_COLL_PAIRS", "analysis_pairs")
    locks_collection: str = os.getenv("MONGO_COLL_LOCKS", "cron_locks")
    max_pool_size: int = int(os.getenv("MONGO_MAX_POOL_SIZE", "50"))


@dataclass(frozen=True)
class LLMConfig:
    """Credenciales y endpoints de los modelos"""
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    openai_api_url: str = os.getenv("OPENAI_API_URL", "https://api.openai.com/v1/chat/completions")
    openai_model: str = os.getenv("OPENAI_MODEL", "gpt-3.5-turbo")
    claude_api_key: str = os.getenv("CLAUDE_API_KEY", "")
    claude_api_url: str = os.getenv("CLAUDE_API_URL", "https://api.anthropic.com/v1/messages")
    claude_model: str = os.getenv("CLAUDE_MODEL", "claude-3-5-sonnet-20240620")
    gemini_api_key: str = os.getenv("GEMINI_API_KEY", "")
    gemini_api_url: str = os.getenv(
        "GEMINI_API_URL",
        "https://generativelanguage.googleapis.com/v1beta/models/gemini-1.5-flash:generateContent",
    )
    max_tokens: int = int(os.getenv("LLM_MAX_TOKENS", "1000"))
    timeout_seconds: int = int(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
    prompt_delay_seconds: float = float(os.getenv("PROMPT_DELAY_SECONDS", "0.5"))


@dataclass(frozen=True)
class StripeConfig:
    """Configuración de Stripe"""
    private_key: str = os.getenv("STRIPE_PRIVATE_KEY", "")
    webhook_secret: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    price_id_100: str = os.getenv("STRIPE_PRICE_ID_100_CREDITS", "")
    price_id_250: str = os.getenv("STRIPE_PRICE_ID_250_CREDITS", "")
    price_id_500: str = os.getenv("STRIPE_PRICE_ID_500_CREDITS", "")
    price_id_2500: str = os.getenv("STRIPE_PRICE_ID_2500_CREDITS", "")
    price_id_10000: str = os.getenv("STRIPE_PRICE_ID_10000_CREDITS", "")
    price_id_50000: str = os.getenv("STRIPE_PRICE_ID_50000_CREDITS", "")


@dataclass(frozen=True)
class QStashConfig:
    """Configuración de QStash (cola de mensajes HTTP)"""
    url: str = os.getenv("QSTASH_URL", "https://qstash.upstash.io")
    token: str = os.getenv("QSTASH_TOKEN", "")
    current_signing_key: str = os.getenv("QSTASH_CURRENT_SIGNING_KEY", "")
    next_signing_key: str = os.getenv("QSTASH_NEXT_SIGNING_KEY", "")
    init_secret: str = os.getenv("QSTASH_INIT_SECRET", "")
    timeout_seconds: int = int(os.getenv("QSTASH_TIMEOUT_SECONDS", "30"))


@dataclass(frozen=True)
class EmailConfig:
    """Configuración de envío de emails (SendGrid)"""
    sendgrid_api_key: str = os.getenv("SENDGRID_API_KEY", "")
    sendgrid_url: str = os.getenv("SENDGRID_API_URL", "https://api.sendgrid.com/v3/mail/send")
    from_email: str = os.getenv("SMTP_FROM_EMAIL", "")
    from_name: str = os.getenv("SMTP_FROM_NAME", "Brand Visibility Tracker")


@dataclass(frozen=True)
class AuthConfig:
    """Configuración de autenticación"""
    token_secret: str = os.getenv("TOKEN_SECRET", "sign")
    token_expire_hours: int = int(os.getenv("TOKEN_EXPIRE_HOURS", "24"))
    bcrypt_rounds: int = int(os.getenv("BCRYPT_ROUNDS", "12"))
    verify_token_minutes: int = int(os.getenv("VERIFY_TOKEN_MINUTES", "30"))
    max_verification_retries: int = int(os.getenv("MAX_VERIFICATION_RETRIES", "5"))


@dataclass(frozen=True)
class AppConfig:
    """Configuración general de la aplicación"""
    base_url: str = os.getenv("NEXT_PUBLIC_BASE_URL", os.getenv("BASE_URL", "http://localhost:3000"))
    cron_secret: str = os.getenv("CRON_SECRET", "")
    prompts_csv_path: str = os.getenv(
        "PROMPTS_CSV_PATH",
        os.path.join(os.path.dirname(os.path.dirname(__file__)), "data", "mvp_prompts_with_funnel_scoring.csv"),
    )
    free_credits: int = int(os.getenv("FREE_CREDITS", "50"))
    credits_per_model: int = int(os.getenv("CREDITS_PER_MODEL", "10"))


@dataclass(frozen=True)
class LoggingConfig:
    """Configuración de logging"""
    level: str = os.getenv("LOG_LEVEL", "INFO")
    format: str = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


@dataclass(frozen=True)
class AppSettings:
    """Configuración principal de la aplicación"""
    database: DatabaseConfig
    llm: LLMConfig
    stripe: StripeConfig
    qstash: QStashConfig
    email: EmailConfig
    auth: AuthConfig
    app: AppConfig
    logging: LoggingConfig

    @classmethod
    def load(cls) -> 'AppSettings':
        """Factory method para cargar configuración"""
        return cls(
            database=DatabaseConfig(),
            llm=LLMConfig(),
            stripe=StripeConfig(),
            qstash=QStashConfig(),
            email=EmailConfig(),
            auth=AuthConfig(),
            app=AppConfig(),
            logging=LoggingConfig()
        )

    def validate(self) -> None:
        """Valida que la configuración sea correcta"""
        errors = []

        if not self.database.uri:
            errors.append("DB_URL is required")

        if not self.database.database:
            errors.append("DATABASE_NAME is required")

        if self.auth.bcrypt_rounds < 4:
            errors.append("BCRYPT_ROUNDS must be at least 4")

        if self.auth.token_expire_hours <= 0:
            errors.append("TOKEN_EXPIRE_HOURS must be greater than 0")

        if self.app.credits_per_model <= 0:
            errors.append("CREDITS_PER_MODEL must be greater than 0")

        if self.llm.prompt_delay_seconds < 0:
            errors.append("PROMPT_DELAY_SECONDS cannot be negative")

        if errors:
            raise ValueError(f"Configuration errors: {'; '.join(errors)}")


# Instancia global de configuración (Singleton)
settings: Optional[AppSettings] = None


def get_settings() -> AppSettings:
    """
    Obtiene la instancia de configuración validada (Singleton pattern)
    """
    global settings
    if settings is None:
        settings = AppSettings.load()
        settings.validate()
    return settings
