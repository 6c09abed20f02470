"""
Servicio de usuarios y autenticación.
Passwords con bcrypt, sesiones con JWT (HS256) y tokens de email guardados como sha256.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

import bcrypt
import jwt

from ..config.settings import AuthConfig
from ..domain.enums import OnboardingStep
from ..domain.exceptions import BrandVizError, NotFoundError, UnauthorizedError
from ..domain.models import UserModel
from ..infrastructure.database_manager import DatabaseManager
from ..infrastructure.email_client import IEmailClient
from ..utils.email_templates import verification_email, reset_password_email
from ..utils.helpers import utcnow, safe_objectid, generate_token, hash_token, serialize_objectid
from .brand_service import BrandService
from .credit_service import CreditService

MAX_RETRIES_MESSAGE = (
    "You have maxed out the attemps to verify your email. "
    "Please write us an email at brandvis.io and we will get back to you!"
)


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def check_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # hash con formato inválido
        return False


def create_access_token(user: Dict[str, Any], config: AuthConfig) -> str:
    now = utcnow()
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "iat": now,
        "exp": now + timedelta(hours=config.token_expire_hours),
    }
    return jwt.encode(payload, config.token_secret, algorithm="HS256")


def decode_access_token(token: str, config: AuthConfig) -> Dict[str, Any]:
    """
    Raises:
        UnauthorizedError: si el token es inválido o expiró
    """
    try:
        return jwt.decode(token, config.token_secret, algorithms=["HS256"], options={"require": ["sub", "exp"]})
    except jwt.PyJWTError as e:
        raise UnauthorizedError() from e


class UserService:
    """Registro, login, verificación de email y recuperación de contraseña"""

    def __init__(
        self,
        db_manager: DatabaseManager,
        credit_service: CreditService,
        brand_service: BrandService,
        email_client: IEmailClient,
        auth_config: AuthConfig,
        base_url: str
    ):
        self.users_collection = db_manager.users
        self.credit_service = credit_service
        self.brand_service = brand_service
        self.email_client = email_client
        self.auth_config = auth_config
        self.base_url = base_url.rstrip("/")
        self.logger = logging.getLogger(__name__)

    def _token_expiry(self):
        return utcnow() + timedelta(minutes=self.auth_config.verify_token_minutes)

    def _session_payload(self, user: Dict[str, Any]) -> Dict[str, Any]:
        """Usuario público + token de sesión"""
        public = UserModel.from_dict(user).to_public_dict()
        return {**serialize_objectid(public), "token": create_access_token(user, self.auth_config)}

    async def _send_verification(self, user: Dict[str, Any], token: str) -> None:
        link = f"{self.base_url}/api/verify-email?verifyToken={token}&id={user['_id']}"
        html = verification_email(link, user_email=user["email"], user_name=user.get("full_name"))
        await self.email_client.send_email(user["email"], "Email Verification", html)

    async def get_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return await self.users_collection.find_one({"email": email.strip().lower()})

    async def get_user(self, user_id: str) -> Dict[str, Any]:
        user = await self.users_collection.find_one({"_id": safe_objectid(user_id)})
        if not user:
            raise BrandVizError("User does not exist!")
        return user

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    async def register(self, full_name: str, email: str, password: str) -> Dict[str, Any]:
        """Crea el usuario, asigna créditos de bienvenida y envía el email de verificación"""
        email = email.strip().lower()
        if await self.get_by_email(email):
            raise BrandVizError("User already present with this email. Please try Login!")

        token = generate_token()
        now = utcnow()
        user = UserModel(
            full_name=full_name,
            email=email,
            password=hash_password(password, self.auth_config.bcrypt_rounds),
            number_of_retries=0,
            verify_token=hash_token(token),
            verify_token_expire=self._token_expiry(),
            current_onboarding_step=OnboardingStep.VERIFY_EMAIL.value,
            created_at=now,
            updated_at=now,
        )
        document = user.to_dict()
        result = await self.users_collection.insert_one(document)
        document["_id"] = result.inserted_id
        self.logger.info(f"User registered: {result.inserted_id}")

        try:
            credit_result = await self.credit_service.assign_free_credits(str(result.inserted_id))
            document["credits_balance"] = credit_result["new_balance"]
        except Exception as e:
            # El registro no falla por los créditos de bienvenida
            self.logger.error(f"Error assigning free credits to {result.inserted_id}: {e}")

        await self._send_verification(document, token)
        return {"user": self._session_payload(document)}

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        user = await self.get_by_email(email)
        if not user:
            raise BrandVizError("User does not exist!")
        if not check_password(password, user.get("password")):
            raise BrandVizError("Email or password is incorrect")

        brands = await self.brand_service.list_user_brands(str(user["_id"]))
        self.logger.info(f"User logged in: {user['_id']}")
        return {"user": self._session_payload(user), "brands": brands}

    async def verify_email(self, token: str, user_id: str) -> None:
        if not token or not user_id:
            raise BrandVizError("Invalid or missing parameters")

        user = await self.users_collection.find_one({
            "_id": safe_objectid(user_id),
            "verify_token": hash_token(token),
            "verify_token_expire": {"$gt": utcnow()},
        })
        if not user:
            raise BrandVizError("Invalid or expired token")

        await self.users_collection.update_one(
            {"_id": user["_id"]},
            {
                "$set": {
                    "is_verified": True,
                    "current_onboarding_step": OnboardingStep.CREATE_BRAND.value,
                    "updated_at": utcnow(),
                },
                "$unset": {"verify_token": "", "verify_token_expire": "", "number_of_retries": ""},
            },
        )
        self.logger.info(f"User {user_id} verified email")

    def onboarding_url(self, user_id: str) -> str:
        return f"{self.base_url}/{user_id}/onboarding"

    async def forgot_password(self, email: str) -> None:
        user = await self.get_by_email(email)
        if not user:
            raise BrandVizError("User not found with this email. Please Sign Up!")

        token = generate_token()
        await self.users_collection.update_one(
            {"_id": user["_id"]},
            {"$set": {
                "reset_password_token": hash_token(token),
                "reset_password_expire": self._token_expiry(),
                "updated_at": utcnow(),
            }},
        )
        link = f"{self.base_url}/reset-password?token={token}&id={user['_id']}"
        await self.email_client.send_email(user["email"], "Reset Your Password", reset_password_email(link, user["email"]))

    async def reset_password(self, token: str, user_id: str, new_password: str) -> None:
        user = await self.users_collection.find_one({
            "_id": safe_objectid(user_id),
            "reset_password_token": hash_token(token),
            "reset_password_expire": {"$gt": utcnow()},
        })
        if not user:
            raise BrandVizError("User not found or token is invalid/expired.")

        await self.users_collection.update_one(
            {"_id": user["_id"]},
            {
                "$set": {
                    "password": hash_password(new_password, self.auth_config.bcrypt_rounds),
                    "updated_at": utcnow(),
                },
                "$unset": {"reset_password_token": "", "reset_password_expire": ""},
            },
        )
        self.logger.info(f"Password reset for user {user_id}")

    async def resend_verification(self, user_id: str) -> Dict[str, Any]:
        user = await self.get_user(user_id)
        retries = user.get("number_of_retries") or 0
        if retries >= self.auth_config.max_verification_retries:
            raise BrandVizError(MAX_RETRIES_MESSAGE)

        token = generate_token()
        user["verify_token"] = hash_token(token)
        user["verify_token_expire"] = self._token_expiry()
        user["number_of_retries"] = retries + 1
        await self.users_collection.update_one(
            {"_id": user["_id"]},
            {"$set": {
                "verify_token": user["verify_token"],
                "verify_token_expire": user["verify_token_expire"],
                "number_of_retries": user["number_of_retries"],
                "updated_at": utcnow(),
            }},
        )
        await self._send_verification(user, token)
        return UserModel.from_dict(user).to_public_dict()

    # ------------------------------------------------------------------
    # Perfil
    # ------------------------------------------------------------------

    async def update_user(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Actualiza datos de perfil; email, password y saldos no se tocan por esta vía"""
        user = await self.get_user(user_id)
        allowed = {"full_name", "current_onboarding_step", "plan_id"}
        update = {key: value for key, value in data.items() if key in allowed}
        if "plan_id" in update:
            update["plan_id"] = safe_objectid(update["plan_id"])
        update["updated_at"] = utcnow()

        await self.users_collection.update_one({"_id": user["_id"]}, {"$set": update})
        user.update(update)
        return UserModel.from_dict(user).to_public_dict()

    async def fetch_role(self, user_id: str, brand_id: str) -> str:
        """
        Raises:
            NotFoundError: si no existe el usuario, la marca o la membresía
        """
        user = await self.users_collection.find_one({"_id": safe_objectid(user_id)})
        if not user:
            raise NotFoundError("User does not exist!")
        brand = await self.brand_service.get_active_brand(brand_id)
        if not brand:
            raise NotFoundError("Brand does not exist!")
        role = await self.brand_service.get_user_role(brand, user_id)
        if role is None:
            raise NotFoundError("Membership does not exist!")
        return role
