"""
Servicio de pagos con Stripe para la compra de paquetes de créditos
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import stripe

from ..config.settings import StripeConfig
from ..domain.enums import TransactionType
from ..domain.exceptions import BrandVizError
from ..utils.helpers import safe_objectid
from .credit_service import CreditService


@dataclass(frozen=True)
class CreditPackage:
    """Paquete de créditos. price en centavos de USD"""
    id: str
    name: str
    credits: int
    price: int
    price_id: str
    description: str
    popular: bool = False
    bonus_credits: int = 0

    @property
    def total_credits(self) -> int:
        return self.credits + self.bonus_credits

    def to_public_dict(self) -> Dict[str, Any]:
        """Formato expuesto en /api/credits/packages"""
        return {
            "id": self.id,
            "name": self.name,
            "credits": self.credits,
            "price": self.price,
            "popular": self.popular,
            "bonusCredits": self.bonus_credits,
            "description": self.description,
            "totalCredits": self.total_credits,
            "pricePerCredit": f"{self.price / self.total_credits:.2f}",
        }


def build_credit_packages(config: StripeConfig) -> List[CreditPackage]:
    return [
        CreditPackage("small_pack", "Small Pack", 100, 4000, config.price_id_100,
                      "100 credits - Perfect for small brands"),
        CreditPackage("medium_pack", "Medium Pack", 250, 8000, config.price_id_250,
                      "250 credits - Great for growing businesses"),
        CreditPackage("large_pack", "Large Pack", 500, 14000, config.price_id_500,
                      "500 credits - Most popular for agencies", popular=True),
        CreditPackage("xl_pack", "XL Pack", 2500, 40000, config.price_id_2500,
                      "2500 credits - Enterprise solution"),
        CreditPackage("xxl_pack", "XXL Pack", 10000, 100000, config.price_id_10000,
                      "10000 credits - Maximum value"),
        CreditPackage("xxxl_pack", "XXXL Pack", 50000, 300000, config.price_id_50000,
                      "50000 credits - Ultimate package", popular=True),
    ]


class StripeService:
    """Clientes, cobros y webhooks de Stripe"""

    def __init__(self, db_manager, credit_service: CreditService, config: StripeConfig):
        self.db_manager = db_manager
        self.users_collection = db_manager.users
        self.transactions_collection = db_manager.credit_transactions
        self.credit_service = credit_service
        self.config = config
        self.packages = build_credit_packages(config)
        self.logger = logging.getLogger(__name__)

    @property
    def api_key(self) -> str:
        if not self.config.private_key:
            raise BrandVizError("STRIPE_PRIVATE_KEY is not set in environment variables", status_code=500)
        return self.config.private_key

    def get_package(self, package_id: str) -> Optional[CreditPackage]:
        return next((pkg for pkg in self.packages if pkg.id == package_id), None)

    def list_packages(self) -> List[Dict[str, Any]]:
        return [pkg.to_public_dict() for pkg in self.packages]

    def _require_package(self, package_id: str) -> CreditPackage:
        package = self.get_package(package_id)
        if package is None:
            raise ValueError("Invalid credit package")
        return package

    @staticmethod
    def _package_metadata(user_id: str, package: CreditPackage) -> Dict[str, str]:
        return {
            "userId": user_id,
            "packageId": package.id,
            "credits": str(package.credits),
            "bonusCredits": str(package.bonus_credits),
        }

    async def create_or_get_customer(self, user_id: str, email: str, name: str) -> str:
        """Reutiliza el customer guardado si sigue existiendo en Stripe"""
        user = await self.users_collection.find_one({"_id": safe_objectid(user_id)})
        existing_id = (user or {}).get("stripe_customer_id")

        if existing_id:
            try:
                await stripe.Customer.retrieve_async(existing_id, api_key=self.api_key)
                return existing_id
            except stripe.StripeError as e:
                self.logger.error(f"Stripe customer not found, creating new one: {e}")

        customer = await stripe.Customer.create_async(
            api_key=self.api_key,
            email=email,
            name=name,
            metadata={"userId": user_id},
        )
        await self.users_collection.update_one(
            {"_id": safe_objectid(user_id)},
            {"$set": {"stripe_customer_id": customer.id}},
        )
        return customer.id

    async def create_payment_intent(self, user_id: str, package_id: str, email: str, name: str) -> Dict[str, Any]:
        package = self._require_package(package_id)
        customer_id = await self.create_or_get_customer(user_id, email, name)

        intent = await stripe.PaymentIntent.create_async(
            api_key=self.api_key,
            amount=package.price,
            currency="usd",
            customer=customer_id,
            metadata=self._package_metadata(user_id, package),
            description=f"{package.name} - {package.credits} credits",
        )
        return {
            "client_secret": intent.client_secret,
            "payment_intent_id": intent.id,
            "amount": package.price,
            "credits": package.total_credits,
        }

    async def create_checkout_session(self, user_id: str, package_id: str, email: str, name: str,
                                      success_url: str, cancel_url: str) -> Dict[str, str]:
        package = self._require_package(package_id)
        customer_id = await self.create_or_get_customer(user_id, email, name)

        session = await stripe.checkout.Session.create_async(
            api_key=self.api_key,
            customer=customer_id,
            payment_method_types=["card"],
            line_items=[{"price": package.price_id, "quantity": 1}],
            mode="payment",
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=self._package_metadata(user_id, package),
        )
        return {"session_id": session.id, "url": session.url}

    async def _already_credited(self, payment_intent_id: Optional[str]) -> bool:
        if not payment_intent_id:
            return False
        existing = await self.transactions_collection.find_one({"stripe_payment_intent_id": payment_intent_id})
        return existing is not None

    async def _credit_purchase(self, metadata: Dict[str, Any], payment_intent_id: Optional[str], source: str) -> bool:
        """Acredita el paquete indicado en la metadata. Devuelve False si ya estaba acreditado"""
        user_id = metadata.get("userId")
        package_id = metadata.get("packageId")
        credits = metadata.get("credits")
        if not user_id or not package_id or not credits:
            raise ValueError(f"Missing required metadata in {source}")

        package = self.get_package(package_id)
        if package is None:
            raise ValueError(f"Invalid credit package in {source} metadata")

        if await self._already_credited(payment_intent_id):
            self.logger.info(f"Payment {payment_intent_id} already credited, skipping")
            return False

        total_credits = int(credits) + int(metadata.get("bonusCredits") or 0)
        await self.credit_service.add_credits(
            user_id,
            total_credits,
            TransactionType.PURCHASE.value,
            f"Credit purchase: {package.name}",
            payment_intent_id,
        )
        return True

    async def handle_payment_success(self, payment_intent: Dict[str, Any]) -> bool:
        return await self._credit_purchase(
            dict(payment_intent.get("metadata") or {}), payment_intent.get("id"), "payment intent"
        )

    async def handle_checkout_success(self, session: Dict[str, Any]) -> bool:
        return await self._credit_purchase(
            dict(session.get("metadata") or {}), session.get("payment_intent"), "checkout session"
        )

    async def get_customer_payment_methods(self, customer_id: str):
        return await stripe.PaymentMethod.list_async(api_key=self.api_key, customer=customer_id, type="card")

    async def get_customer_payments(self, customer_id: str, limit: int = 10):
        return await stripe.PaymentIntent.list_async(api_key=self.api_key, customer=customer_id, limit=limit)

    async def refund_payment(self, payment_intent_id: str, amount: Optional[int] = None,
                             reason: Optional[str] = None):
        params: Dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount:
            params["amount"] = amount
        if reason:
            params["reason"] = reason
        return await stripe.Refund.create_async(api_key=self.api_key, **params)

    def verify_webhook_signature(self, payload: bytes, signature: str):
        """Lanza ValueError o stripe.SignatureVerificationError si la firma no es válida"""
        return stripe.Webhook.construct_event(payload, signature, self.config.webhook_secret)
