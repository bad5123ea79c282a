"""Credential resolution for discovery runs"""

import ipaddress
import logging
from typing import Dict, List, Optional, Tuple

from idrac_discovery.config import IDRAC_DEFAULT_PASSWORD, IDRAC_DEFAULT_USER
from idrac_discovery.errors import CredentialConfigError
from idrac_discovery.models import (
    CredentialAssignment,
    CredentialCandidate,
    CredentialPolicy,
    CredentialProfile,
    CredentialSource,
)

logger = logging.getLogger(__name__)


class _Scope:
    """Parsed assignment scope: inclusive integer bounds plus its size."""

    __slots__ = ("first", "last", "size")

    def __init__(self, first: int, last: int):
        self.first = first
        self.last = last
        self.size = last - first + 1

    def contains(self, value: int) -> bool:
        return self.first <= value <= self.last


def _parse_scope(assignment: CredentialAssignment) -> Optional[_Scope]:
    """IPv4 bounds of an assignment; None for anything unparseable or not IPv4."""
    try:
        if assignment.subnet:
            network = ipaddress.IPv4Network(assignment.subnet.strip(), strict=False)
            return _Scope(int(network.network_address), int(network.broadcast_address))
        if assignment.range_start and assignment.range_end:
            first = int(ipaddress.IPv4Address(assignment.range_start.strip()))
            last = int(ipaddress.IPv4Address(assignment.range_end.strip()))
            if first <= last:
                return _Scope(first, last)
    except ValueError:
        pass
    return None


class CredentialResolver:
    """
    Ordered credential candidates for an address.

    Order:
    1. Host overrides for the exact address
    2. Active assignments whose scope contains the address: most specific
       scope first, then profile priority_order, non-default before default,
       then profile id
    3. Default profiles, only when nothing above matched
    4. Manual fallback credential, if one was supplied

    Candidates sharing (username, secret, port, scheme) are collapsed to the
    first occurrence. The policy is parsed once and never mutated, so one
    resolver is shared by every worker without locking.
    """

    def __init__(self, policy: CredentialPolicy):
        self.policy = policy
        self.profiles: Dict[str, CredentialProfile] = {p.id: p for p in policy.profiles}

        self._overrides: Dict[str, List[CredentialProfile]] = {}
        for override in policy.host_overrides:
            profile = self.profiles.get(override.profile_id)
            if profile is None:
                logger.warning(f"Host override for {override.address} references unknown profile {override.profile_id}")
                continue
            self._overrides.setdefault(override.address.strip(), []).append(profile)
        for profiles in self._overrides.values():
            profiles.sort(key=lambda p: (p.priority_order, p.id))

        self._scoped: List[Tuple[_Scope, CredentialProfile]] = []
        for assignment in policy.assignments:
            if not assignment.is_active:
                continue
            profile = self.profiles.get(assignment.profile_id)
            if profile is None:
                logger.warning(f"Credential assignment {assignment.id} references unknown profile {assignment.profile_id}")
                continue
            scope = _parse_scope(assignment)
            if scope is None:
                logger.warning(
                    f"Ignoring credential assignment {assignment.id}: cannot parse scope "
                    f"{assignment.subnet or f'{assignment.range_start}-{assignment.range_end}'}"
                )
                continue
            self._scoped.append((scope, profile))

        self._defaults = sorted(
            (p for p in policy.profiles if p.is_default),
            key=lambda p: (p.priority_order, p.id),
        )

    @classmethod
    def from_policy(cls, policy: CredentialPolicy) -> "CredentialResolver":
        """Validate a policy and build a resolver for it."""
        if policy.is_empty():
            raise CredentialConfigError()
        return cls(policy)

    def resolve(self, address: str) -> List[CredentialCandidate]:
        """
        Return the ordered, de-duplicated candidate list for an address.

        An empty list means the host has no applicable credentials.
        """
        candidates: List[CredentialCandidate] = []

        for profile in self._overrides.get(address, []):
            candidates.append(self._candidate(profile, CredentialSource.HOST_OVERRIDE))

        try:
            value = int(ipaddress.IPv4Address(address))
        except ValueError:
            logger.error(f"Cannot resolve credentials for invalid address {address!r}")
            value = None

        if value is not None:
            matches = [(scope, profile) for scope, profile in self._scoped if scope.contains(value)]
            matches.sort(key=lambda m: (m[0].size, m[1].priority_order, m[1].is_default, m[1].id))
            for _, profile in matches:
                candidates.append(self._candidate(profile, CredentialSource.ASSIGNMENT))

        if not candidates:
            for profile in self._defaults:
                candidates.append(self._candidate(profile, CredentialSource.DEFAULT_PROFILE))

        if self.policy.manual_fallback is not None:
            candidates.append(self.policy.manual_fallback)

        unique = _dedupe(candidates)
        if unique:
            logger.debug(f"Resolved {len(unique)} credential candidate(s) for {address}: "
                         f"{', '.join(c.label for c in unique)}")
        return unique

    @staticmethod
    def _candidate(profile: CredentialProfile, source: CredentialSource) -> CredentialCandidate:
        return CredentialCandidate(
            username=profile.username,
            secret=profile.secret,
            port=profile.port,
            protocol_scheme=profile.protocol,
            profile_id=profile.id,
            profile_name=profile.name,
            source=source,
        )


def _dedupe(candidates: List[CredentialCandidate]) -> List[CredentialCandidate]:
    seen = set()
    unique = []
    for candidate in candidates:
        key = candidate.identity_key()
        if key in seen:
            continue
        seen.add(key)
        unique.append(candidate)
    return unique


def manual_candidate(username: Optional[str] = None, password: Optional[str] = None,
                     port: int = 443) -> Optional[CredentialCandidate]:
    """
    Build the manual fallback candidate from job-supplied credentials,
    falling back to the IDRAC_USER/IDRAC_PASSWORD environment defaults.
    """
    username = username or IDRAC_DEFAULT_USER
    password = password or IDRAC_DEFAULT_PASSWORD
    if not username or not password:
        return None
    return CredentialCandidate(username=username, secret=password, port=port,
                               source=CredentialSource.MANUAL)
