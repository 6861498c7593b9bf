"""
User profiles

Users are provisioned the first time an external identity signs in. Profile,
preference and address edits are read-modify-write on the user document and
are guarded by its version counter.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, serialize_doc, utcnow
from errors import ConflictError, NotFoundError
from loyalty import points_to_next_tier, tier_of
from schemas import Address, AddressUpdate, PreferencesUpdate, ProfileUpdate, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExternalIdentity:
    uid: str
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None


def serialize_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    user = serialize_doc(doc)
    user.pop("password_hash", None)
    points = user.get("loyalty_points", 0)
    user["loyalty_tier"] = tier_of(points)
    user["points_to_next_tier"] = points_to_next_tier(points)
    return user


def get_or_create_user(db: Database, identity: ExternalIdentity) -> Dict[str, Any]:
    user = db["user"].find_one({"uid": identity.uid})
    if user:
        return user

    new_user = User(
        uid=identity.uid,
        email=identity.email.strip().lower() if identity.email else None,
        display_name=identity.name or "User",
        photo_url=identity.picture,
    )
    try:
        create_document(db, "user", new_user.model_dump(mode="json", exclude_none=True))
        logger.info("Provisioned user for identity %s", identity.uid)
    except DuplicateKeyError:
        pass
    user = db["user"].find_one({"uid": identity.uid})
    if user is None:
        raise ConflictError("Email already registered")
    return user


def _version_filter(user: Dict[str, Any]) -> Dict[str, Any]:
    if "version" in user:
        return {"_id": user["_id"], "version": user["version"]}
    return {"_id": user["_id"], "version": {"$exists": False}}


def _save(db: Database, user: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    updated = db["user"].find_one_and_update(
        _version_filter(user),
        {"$set": {**changes, "updated_at": utcnow()}, "$inc": {"version": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ConflictError("Profile was modified by another request, please retry")
    return updated


def update_profile(db: Database, user: Dict[str, Any], data: ProfileUpdate) -> Dict[str, Any]:
    changes = data.model_dump(mode="json", exclude_unset=True)
    if changes.get("display_name") is None:
        changes.pop("display_name", None)
    if not changes:
        return user
    return _save(db, user, changes)


def update_preferences(db: Database, user: Dict[str, Any], data: PreferencesUpdate) -> Dict[str, Any]:
    preferences = dict(user.get("preferences") or {})
    notifications = dict(preferences.get("notifications") or {})
    if data.notifications is not None:
        notifications.update(data.notifications.model_dump(exclude_none=True))
    preferences["notifications"] = notifications
    if data.language:
        preferences["language"] = data.language
    if data.currency:
        preferences["currency"] = data.currency.upper()
    return _save(db, user, {"preferences": preferences})


def _addresses(user: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [dict(a) for a in user.get("addresses", [])]


def _check_index(addresses: List[Dict[str, Any]], index: int) -> None:
    if index < 0 or index >= len(addresses):
        raise NotFoundError("Address not found")


def add_address(db: Database, user: Dict[str, Any], address: Address) -> Dict[str, Any]:
    addresses = _addresses(user)
    addresses.append(address.model_dump())
    return _save(db, user, {"addresses": addresses})


def update_address(db: Database, user: Dict[str, Any], index: int, data: AddressUpdate) -> Dict[str, Any]:
    addresses = _addresses(user)
    _check_index(addresses, index)
    addresses[index].update(data.model_dump(exclude_none=True))
    return _save(db, user, {"addresses": addresses})


def delete_address(db: Database, user: Dict[str, Any], index: int) -> Dict[str, Any]:
    addresses = _addresses(user)
    _check_index(addresses, index)
    del addresses[index]
    return _save(db, user, {"addresses": addresses})
