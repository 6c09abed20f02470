"""
Equipo de una marca: invitaciones por email, aceptación y administración de miembros
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from ..config.settings import AuthConfig
from ..domain.enums import InviteStatus, MembershipStatus, Role
from ..domain.exceptions import BrandVizError, ConflictError, ForbiddenError, NotFoundError
from ..domain.models import InviteModel, MembershipModel, UserModel
from ..infrastructure.database_manager import DatabaseManager
from ..infrastructure.email_client import IEmailClient
from ..utils.email_templates import invite_member_email
from ..utils.helpers import utcnow, safe_objectid, generate_token, hash_token
from .brand_service import BrandService
from .user_service import hash_password

DEFAULT_INVITE_TTL_HOURS = 24 * 7
STARTER_PLAN_ID = "starter"


class TeamService:
    """Invitaciones y membresías de una marca"""

    def __init__(
        self,
        db_manager: DatabaseManager,
        brand_service: BrandService,
        email_client: IEmailClient,
        auth_config: AuthConfig,
        base_url: str
    ):
        self.users_collection = db_manager.users
        self.plans_collection = db_manager.plans
        self.memberships_collection = db_manager.memberships
        self.invites_collection = db_manager.invites
        self.brand_service = brand_service
        self.email_client = email_client
        self.auth_config = auth_config
        self.base_url = base_url.rstrip("/")
        self.logger = logging.getLogger(__name__)

    def _invite_link(self, inviter_id, brand_id, token: str, email: str, invitee_id=None) -> str:
        link = f"{self.base_url}/{inviter_id}/brands/{brand_id}/accept-invite?verifyToken={token}&email={email}"
        if invitee_id is not None:
            link += f"&user_id={invitee_id}"
        return link

    async def _require_manager(self, brand: Dict[str, Any], user_id: str, message: str) -> Dict[str, Any]:
        user = await self.users_collection.find_one({"_id": safe_objectid(user_id)})
        if not user:
            raise BrandVizError("User does not exist!")
        if not await self.brand_service.can_manage(brand, user_id):
            raise ForbiddenError(message)
        return user

    async def _is_member(self, brand: Dict[str, Any], user: Optional[Dict[str, Any]]) -> bool:
        if not user:
            return False
        if brand.get("owner_id") == user["_id"]:
            return True
        membership = await self.memberships_collection.find_one({
            "brand_id": brand["_id"],
            "user_id": user["_id"],
            "status": MembershipStatus.ACTIVE.value,
        })
        return membership is not None

    async def _send_invite(self, email: str, link: str, brand: Dict[str, Any], inviter: Dict[str, Any]) -> None:
        html = invite_member_email(link, brand_name=brand.get("name"), inviter_name=inviter.get("full_name"))
        await self.email_client.send_email(email, "Brand Invitation Email", html)

    # ------------------------------------------------------------------
    # Invitaciones
    # ------------------------------------------------------------------

    async def invite_members(
        self,
        brand_id: str,
        user_id: str,
        emails: List[Dict[str, str]],
        ttl_hours: int = DEFAULT_INVITE_TTL_HOURS
    ) -> List[Dict[str, str]]:
        """
        Invita una lista de emails. Cada email se resuelve por separado:
        skipped si ya es miembro o tiene una invitación pendiente, invited o error si falla el envío.
        """
        brand = await self.brand_service.get_active_brand(brand_id)
        if not brand:
            raise BrandVizError("Brand does not exist!")
        inviter = await self._require_manager(
            brand, user_id, "You do not have permission to invite users to this brand."
        )

        results: List[Dict[str, str]] = []
        for entry in emails:
            email = entry["email"].strip().lower()
            role = Role(entry.get("role") or Role.VIEWER.value)
            invitee = await self.users_collection.find_one({"email": email})

            if await self._is_member(brand, invitee):
                results.append({"email": email, "status": "skipped",
                                "message": "User is already a member of this brand"})
                continue

            pending = await self.invites_collection.find_one({
                "brand_id": brand["_id"], "email": email, "status": InviteStatus.PENDING.value,
            })
            if pending:
                results.append({"email": email, "status": "skipped",
                                "message": "An invite is already pending for this email"})
                continue

            token = generate_token()
            now = utcnow()
            invite = InviteModel(
                brand_id=brand["_id"],
                email=email,
                role=role,
                invited_by=inviter["_id"],
                verify_token=hash_token(token),
                verify_token_expire=now + timedelta(hours=ttl_hours),
                status=InviteStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            try:
                inserted = await self.invites_collection.insert_one(invite.to_dict())
            except DuplicateKeyError:
                # Otra request creó la misma invitación pendiente
                results.append({"email": email, "status": "skipped",
                                "message": "An invite is already pending for this email"})
                continue

            link = self._invite_link(inviter["_id"], brand["_id"], token, email, invitee["_id"] if invitee else None)
            try:
                await self._send_invite(email, link, brand, inviter)
                results.append({"email": email, "status": "invited", "message": "Invitation email has been sent!"})
            except Exception as e:
                self.logger.error(f"Failed to send invitation to {email}: {e}")
                await self.invites_collection.delete_one({"_id": inserted.inserted_id})
                results.append({"email": email, "status": "error", "message": "Failed to send invitation email."})

        self.logger.info(f"Processed {len(results)} invites for brand {brand_id}")
        return results

    async def resend_invite(self, brand_id: str, user_id: str, invite_id: str,
                            ttl_hours: int = DEFAULT_INVITE_TTL_HOURS) -> Dict[str, Any]:
        """Regenera el token de una invitación pendiente y la reenvía"""
        brand = await self.brand_service.get_active_brand(brand_id)
        if not brand:
            raise NotFoundError("Brand does not exist!")
        inviter = await self._require_manager(
            brand, user_id, "You do not have permission to invite users to this brand."
        )

        token = generate_token()
        now = utcnow()
        invite = await self.invites_collection.find_one_and_update(
            {"_id": safe_objectid(invite_id), "brand_id": brand["_id"], "status": InviteStatus.PENDING.value},
            {"$set": {
                "verify_token": hash_token(token),
                "verify_token_expire": now + timedelta(hours=ttl_hours),
                "invited_by": inviter["_id"],
                "updated_at": now,
            }},
            return_document=ReturnDocument.AFTER,
        )
        if not invite:
            raise NotFoundError("Invite not found!")

        invitee = await self.users_collection.find_one({"email": invite["email"]}, {"_id": 1})
        link = self._invite_link(inviter["_id"], brand["_id"], token, invite["email"],
                                 invitee["_id"] if invitee else None)
        await self._send_invite(invite["email"], link, brand, inviter)
        self.logger.info(f"Invite {invite_id} resent for brand {brand_id}")
        return {"inviteId": str(invite["_id"]), "email": invite["email"], "expiresAt": invite["verify_token_expire"]}

    async def accept_invite(
        self,
        brand_id: str,
        invited_by: str,
        verify_token: str,
        email: str,
        signup: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """
        Acepta una invitación pendiente. Si el email no tiene cuenta se crea con signup.

        Raises:
            BrandVizError: marca inexistente, invitación inválida o falta de password
            ConflictError: invitación owner en una marca que ya tiene dueño
        """
        brand = await self.brand_service.get_active_brand(brand_id)
        if not brand:
            raise BrandVizError("Brand does not exist!")

        email = email.strip().lower()
        now = utcnow()
        invite = await self.invites_collection.find_one({
            "verify_token": hash_token(verify_token),
            "brand_id": brand["_id"],
            "email": email,
            "status": InviteStatus.PENDING.value,
            "verify_token_expire": {"$gt": now},
        })
        if not invite:
            raise BrandVizError("Invite is invalid or has expired.")

        if invite.get("role") == Role.OWNER.value:
            existing_owner = await self.memberships_collection.find_one({
                "brand_id": brand["_id"], "role": Role.OWNER.value, "status": MembershipStatus.ACTIVE.value,
            })
            if existing_owner:
                raise ConflictError("This brand already has an owner.")

        user = await self.users_collection.find_one({"email": email})
        if not user:
            if not signup or not signup.get("password"):
                raise BrandVizError("Password is required for signup.")
            starter = await self.plans_collection.find_one({"plan_id": STARTER_PLAN_ID})
            new_user = UserModel(
                full_name=signup.get("full_name", ""),
                email=email,
                password=hash_password(signup["password"], self.auth_config.bcrypt_rounds),
                is_verified=True,
                plan_id=starter["_id"] if starter else None,
                created_at=now,
                updated_at=now,
            )
            user = new_user.to_dict()
            result = await self.users_collection.insert_one(user)
            user["_id"] = result.inserted_id
            self.logger.info(f"User {result.inserted_id} created from invite")

        await self.invites_collection.update_one(
            {"_id": invite["_id"]},
            {
                "$set": {"status": InviteStatus.ACCEPTED.value, "accepted_at": now, "updated_at": now},
                "$unset": {"verify_token": "", "verify_token_expire": ""},
            },
        )

        membership = MembershipModel(
            brand_id=brand["_id"],
            user_id=user["_id"],
            role=Role(invite.get("role", Role.VIEWER.value)),
            status=MembershipStatus.ACTIVE,
            created_by=safe_objectid(invited_by) or invite.get("invited_by"),
            created_at=now,
            updated_at=now,
        )
        await self.memberships_collection.update_one(
            {"brand_id": brand["_id"], "user_id": user["_id"]},
            {"$set": membership.to_dict()},
            upsert=True,
        )

        self.logger.info(f"User {user['_id']} joined brand {brand_id} as {membership.role.value}")
        return {"user": UserModel.from_dict(user).to_public_dict()}

    # ------------------------------------------------------------------
    # Miembros
    # ------------------------------------------------------------------

    async def list_members(self, brand_id: str) -> Dict[str, Any]:
        """Miembros activos e invitaciones pendientes; el dueño siempre encabeza la lista"""
        brand = await self.brand_service.get_active_brand(brand_id)
        if not brand:
            raise NotFoundError("Brand does not exist!")

        memberships = await self.memberships_collection.find({
            "brand_id": brand["_id"], "status": MembershipStatus.ACTIVE.value,
        }).sort("created_at", -1).to_list(length=None)
        invites = await self.invites_collection.find({
            "brand_id": brand["_id"], "status": InviteStatus.PENDING.value,
        }).sort("created_at", -1).to_list(length=None)

        user_ids = {m["user_id"] for m in memberships}
        user_ids.update(m["created_by"] for m in memberships if m.get("created_by"))
        user_ids.update(i["invited_by"] for i in invites if i.get("invited_by"))
        if brand.get("owner_id"):
            user_ids.add(brand["owner_id"])
        users = {
            u["_id"]: u for u in await self.users_collection.find(
                {"_id": {"$in": list(user_ids)}}, {"_id": 1, "full_name": 1, "email": 1, "created_at": 1}
            ).to_list(length=None)
        }

        def _ref(user_oid) -> Optional[Dict[str, Any]]:
            user = users.get(user_oid)
            if not user:
                return None
            return {"_id": user["_id"], "full_name": user.get("full_name"), "email": user.get("email")}

        members: List[Dict[str, Any]] = []
        for membership in memberships:
            user = users.get(membership["user_id"])
            if not user:
                continue
            members.append({
                "id": str(membership["_id"]),
                "userId": str(user["_id"]),
                "email": user.get("email"),
                "fullName": user.get("full_name"),
                "role": membership.get("role"),
                "status": "active",
                "invitedAt": membership.get("created_at"),
                "createdBy": _ref(membership.get("created_by")),
                "membershipId": str(membership["_id"]),
                "inviteId": None,
                "lastActive": user.get("created_at"),
            })
        for invite in invites:
            members.append({
                "id": str(invite["_id"]),
                "userId": None,
                "email": invite.get("email"),
                "fullName": None,
                "role": invite.get("role"),
                "status": "pending",
                "invitedAt": invite.get("created_at"),
                "createdBy": _ref(invite.get("invited_by")),
                "membershipId": None,
                "inviteId": str(invite["_id"]),
                "lastActive": None,
            })

        owner = users.get(brand.get("owner_id"))
        if owner and not any(m["userId"] == str(owner["_id"]) for m in members):
            members.insert(0, {
                "id": f"owner-{owner['_id']}",
                "userId": str(owner["_id"]),
                "email": owner.get("email"),
                "fullName": owner.get("full_name"),
                "role": Role.OWNER.value,
                "status": "active",
                "invitedAt": brand.get("created_at"),
                "createdBy": None,
                "membershipId": None,
                "inviteId": None,
                "lastActive": owner.get("created_at"),
            })

        return {
            "brandId": brand_id,
            "brandName": brand.get("name"),
            "totalMembers": len(members),
            "members": members,
        }

    async def remove_member(self, brand_id: str, member_id: str, requesting_user_id: str,
                            member_type: str) -> Dict[str, Any]:
        """Quita una membresía o cancela una invitación pendiente"""
        brand = await self.brand_service.get_active_brand(brand_id)
        if not brand:
            raise NotFoundError("Brand not found!")
        requester = await self.users_collection.find_one({"_id": safe_objectid(requesting_user_id)})
        if not requester:
            raise NotFoundError("Requesting user not found!")
        if not await self.brand_service.can_manage(brand, requesting_user_id):
            raise ForbiddenError("You do not have permission to remove members from this brand.")

        if member_type == "membership":
            membership = await self.memberships_collection.find_one(
                {"_id": safe_objectid(member_id), "brand_id": brand["_id"]}
            )
            if not membership:
                raise NotFoundError("Membership not found!")
            if membership["user_id"] == brand.get("owner_id"):
                raise BrandVizError("Cannot remove the brand owner from the brand.")
            if membership["user_id"] == requester["_id"]:
                raise BrandVizError("You cannot remove yourself from the brand.")

            member_user = await self.users_collection.find_one({"_id": membership["user_id"]}) or {}
            removed = {
                "email": member_user.get("email"),
                "fullName": member_user.get("full_name"),
                "role": membership.get("role"),
                "type": "membership",
            }
            await self.memberships_collection.delete_one({"_id": membership["_id"]})
        elif member_type == "invite":
            invite = await self.invites_collection.find_one(
                {"_id": safe_objectid(member_id), "brand_id": brand["_id"]}
            )
            if not invite:
                raise NotFoundError("Invite not found!")
            removed = {"email": invite.get("email"), "fullName": None, "role": invite.get("role"), "type": "invite"}
            await self.invites_collection.delete_one({"_id": invite["_id"]})
        else:
            raise BrandVizError("Invalid request body!")

        self.logger.info(f"Removed {member_type} {member_id} from brand {brand_id}")
        return {"removedMember": removed, "brandId": brand_id}
