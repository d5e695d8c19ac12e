"""Pairing of source users with their counterpart in the destination tenant."""
from __future__ import annotations

import logging
from typing import Dict, Iterable, Mapping, Optional, Sequence

from .models import UserRecord

logger = logging.getLogger(__name__)


def local_part(principal_name: str) -> Optional[str]:
    """Return the local part of ``local@domain`` as written, or None when malformed."""
    if not principal_name or "@" not in principal_name:
        return None
    local = principal_name.split("@", 1)[0]
    return local or None


def match_key(principal_name: str) -> Optional[str]:
    """Lower-cased local part used to pair users across tenants."""
    local = local_part(principal_name)
    return local.lower() if local else None


def build_index(users: Iterable[UserRecord]) -> Dict[str, UserRecord]:
    """Map destination match keys to users; the first user listed wins a key."""
    index: Dict[str, UserRecord] = {}
    for user in users:
        key = match_key(user.user_principal_name)
        if key is None:
            logger.warning("Destination user %s has a malformed principal name %r", user.id, user.user_principal_name)
            continue
        if key in index:
            logger.warning(
                "Match key %r shared by %s and %s; keeping the first",
                key,
                index[key].user_principal_name,
                user.user_principal_name,
            )
            continue
        index[key] = user
    return index


def resolve(
    source_user: UserRecord,
    index: Mapping[str, UserRecord],
    destination_users: Sequence[UserRecord],
    destination_domain: str,
) -> Optional[UserRecord]:
    """Find the destination counterpart of ``source_user``.

    The match-key index is tried first. When it misses, the principal name
    ``localpart@destination_domain`` is searched verbatim across the full
    destination listing.
    """
    key = match_key(source_user.user_principal_name)
    if key is None:
        return None

    match = index.get(key)
    if match is not None:
        return match

    candidate = f"{local_part(source_user.user_principal_name)}@{destination_domain}"
    for user in destination_users:
        if user.user_principal_name == candidate:
            return user
    return None
