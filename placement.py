"""Storage policy to datastore placement resolution.

A storage policy name is resolved to exactly one SPBM profile, then the
placement solver is asked which of the vCenter datastores are compatible with
it.
"""

import logging
from typing import Any, NamedTuple

from check_errors import PolicyAmbiguous, PolicyNotFound

logger = logging.getLogger(__name__)


class ProfileNotFound(NamedTuple):
    policy_name: str


class ProfileAmbiguous(NamedTuple):
    policy_name: str
    count: int


class ProfileResolved(NamedTuple):
    policy_name: str
    profile: Any


def _lookup_result(policy_name, matches):
    if not matches:
        return ProfileNotFound(policy_name)
    if len(matches) > 1:
        return ProfileAmbiguous(policy_name, len(matches))
    return ProfileResolved(policy_name, matches[0])


def lookup_profile(session, policy_name):
    """Find the storage profile called policy_name.

    When no profile carries that name, the name is tried as a raw profile id.
    """
    profiles = session.retrieve_storage_profiles()
    named = [p for p in profiles if p.name == policy_name]
    if named:
        return _lookup_result(policy_name, named)
    logger.debug(f"No storage policy named {policy_name!r}, trying it as a profile id")
    return _lookup_result(policy_name, session.retrieve_profiles_by_id([policy_name]))


def resolve_profile(session, policy_name):
    lookup = lookup_profile(session, policy_name)
    if isinstance(lookup, ProfileNotFound):
        raise PolicyNotFound(f"error listing storage policy {policy_name!r}: policy not found")
    if isinstance(lookup, ProfileAmbiguous):
        raise PolicyAmbiguous(
            f"error listing storage policy {policy_name!r}: multiple ({lookup.count}) policies found"
        )
    return lookup.profile


def resolve_compatible_datastores(session, policy_name):
    """Return the names of the datastores compatible with the storage policy."""
    profile = resolve_profile(session, policy_name)

    datastore_names = session.list_datastores()
    hub_ids = session.compatible_hub_ids(profile.profileId, list(datastore_names))

    datastores = []
    for hub_id in hub_ids:
        name = datastore_names.get(hub_id)
        if name is None:
            logger.debug(f"Placement solver returned unknown datastore {hub_id}, skipping")
            continue
        datastores.append(name)
    logger.debug(f"Policy {policy_name!r} is compatible with datastores {datastores}")
    return datastores
