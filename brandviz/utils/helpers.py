"""
Utilidades y helpers para la aplicación
"""

import hashlib
import math
import secrets
from datetime import datetime, timezone
from typing import Any, Optional
from bson import ObjectId


def utcnow() -> datetime:
    """Obtiene datetime UTC actual"""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Epoch actual en milisegundos"""
    return int(utcnow().timestamp() * 1000)


def serialize_objectid(obj: Any) -> Any:
    """Serializa ObjectId y datetime para JSON"""
    if isinstance(obj, ObjectId):
        return str(obj)
    elif isinstance(obj, datetime):
        return isoformat(obj)
    elif isinstance(obj, dict):
        return {key: serialize_objectid(value) for key, value in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [serialize_objectid(item) for item in obj]
    return obj


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """ISO 8601 en UTC con milisegundos y sufijo Z"""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="milliseconds") + "Z"


def ensure_utc(value: datetime) -> datetime:
    """Mongo devuelve datetimes naive en UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def safe_objectid(id_str: Optional[str]) -> Optional[ObjectId]:
    """Convierte string a ObjectId de forma segura"""
    if not id_str:
        return None
    if isinstance(id_str, ObjectId):
        return id_str
    if not ObjectId.is_valid(id_str):
        return None
    return ObjectId(id_str)


def is_valid_objectid(value: Optional[str]) -> bool:
    return bool(value) and ObjectId.is_valid(value)


def round_half_up(value: float) -> int:
    """Redondeo con empates hacia +infinito (0.5 -> 1, -0.5 -> 0)"""
    return int(math.floor(value + 0.5))


def round2(value: float) -> float:
    """Redondea a dos decimales con empates hacia arriba"""
    return math.floor(value * 100 + 0.5) / 100


def generate_token(nbytes: int = 20) -> str:
    """Token aleatorio en hex para links de email"""
    return secrets.token_hex(nbytes)


def hash_token(token: str) -> str:
    """sha256 hex; en base solo se guarda el hash del token"""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
