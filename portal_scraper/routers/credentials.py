from fastapi import APIRouter, HTTPException, Header
from pydantic import BaseModel, Field
from typing import Dict, Optional
from datetime import datetime
from cryptography.fernet import Fernet, InvalidToken
import logging

from ..config import settings
from ..models.records import PortalCredentials

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/credentials", tags=["credentials"])

FERNET_KEY = settings.credentials_key
if not FERNET_KEY:
    # generate a key for development if not provided (not safe for production)
    logger.warning("CREDENTIALS_KEY not set; generated an ephemeral key. Saved passwords will not survive a restart.")
    FERNET_KEY = Fernet.generate_key().decode()
fernet = Fernet(FERNET_KEY.encode())

# Used instead of MongoDB when JOB_STORE_BACKEND=memory
_memory_vault: Dict[str, Dict[str, str]] = {}


def use_memory_vault() -> bool:
    return settings.job_store_backend == "memory"


class CredentialsIn(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


def mask(username: str) -> str:
    if len(username) <= 2:
        return "***"
    return f"{username[0]}***{username[-1]}"


async def _find(user_id: str):
    from ..models.credential import PortalCredential
    return await PortalCredential.find_one(PortalCredential.user_id == user_id)


@router.put("")
async def save_credentials(payload: CredentialsIn, user_id: str = Header(..., alias="X-User-Id")):
    """Store portal credentials for the caller; the password is encrypted at rest."""
    encrypted = fernet.encrypt(payload.password.encode()).decode()
    try:
        if use_memory_vault():
            _memory_vault[user_id] = {"username": payload.username, "password": encrypted}
        else:
            from ..models.credential import PortalCredential
            doc = await _find(user_id)
            if doc:
                await doc.set({"username": payload.username, "password": encrypted, "updated_at": datetime.utcnow()})
            else:
                await PortalCredential(user_id=user_id, username=payload.username, password=encrypted).insert()
        return {"status": "saved", "username": mask(payload.username)}
    except Exception as e:
        logger.exception("Failed to save credentials")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("")
async def get_credentials(user_id: str = Header(..., alias="X-User-Id")):
    if use_memory_vault():
        stored = _memory_vault.get(user_id)
        username = stored["username"] if stored else None
    else:
        doc = await _find(user_id)
        username = doc.username if doc else None
    if username is None:
        raise HTTPException(status_code=404, detail="No credentials saved")
    # Never return the password, encrypted or not
    return {"username": mask(username), "password": "***"}


@router.delete("")
async def delete_credentials(user_id: str = Header(..., alias="X-User-Id")):
    if use_memory_vault():
        if _memory_vault.pop(user_id, None) is None:
            raise HTTPException(status_code=404, detail="No credentials saved")
        return {"status": "deleted"}
    doc = await _find(user_id)
    if not doc:
        raise HTTPException(status_code=404, detail="No credentials saved")
    await doc.delete()
    return {"status": "deleted"}


# helper to retrieve decrypted credentials server-side
async def get_decrypted_credentials(user_id: str) -> Optional[PortalCredentials]:
    if use_memory_vault():
        stored = _memory_vault.get(user_id)
    else:
        doc = await _find(user_id)
        stored = {"username": doc.username, "password": doc.password} if doc else None
    if not stored:
        return None
    try:
        password = fernet.decrypt(stored["password"].encode()).decode()
    except InvalidToken:
        logger.error(f"Stored password for user {user_id} cannot be decrypted with the current key")
        return None
    return PortalCredentials(username=stored["username"], password=password)
