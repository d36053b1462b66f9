"""
Authorization policies.

Each policy is a predicate over the principal. Policies run after the
principal has been augmented with the ``AuthScheme`` claim.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from fastapi import Depends, HTTPException, status

from ..config import AppRolesSettings
from .claims import Principal
from .dependencies import get_portal_state, require_principal


logger = logging.getLogger(__name__)

COMMERCIAL_ONLY = "CommercialOnly"
EXCLUSIVE_DEMOS_ONLY = "ExclusiveDemosOnly"
LOYALTY_ACCESS = "LoyaltyAccess"


def _in_group(principal: Principal, group_id: Optional[str]) -> bool:
    if not group_id:
        return False
    return principal.has_claim("groups", group_id)


def one_month_before(moment: datetime) -> datetime:
    """Same day of the previous calendar month, clamped to the month's last day."""
    year, month = (moment.year, moment.month - 1) if moment.month > 1 else (moment.year - 1, 12)
    for day in range(moment.day, 0, -1):
        try:
            return moment.replace(year=year, month=month, day=day)
        except ValueError:
            continue
    raise ValueError(f"Cannot compute one month before {moment}")


def _parse_date(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def commercial_only(principal: Principal, roles: AppRolesSettings) -> bool:
    return _in_group(principal, roles.COMMERCIAL_ACCOUNTS_SECURITY_GROUP)


def exclusive_demos_only(principal: Principal, roles: AppRolesSettings) -> bool:
    return _in_group(principal, roles.EXCLUSIVE_DEMOS_SECURITY_GROUP)


def loyalty_access(
    principal: Principal,
    roles: AppRolesSettings,
    now: Optional[datetime] = None,
) -> bool:
    """
    Loyalty members enrolled for at least one month.

    Requires a ``loyaltyTier`` or ``loyaltyNumber`` claim and a
    ``loyaltySince`` date at least one calendar month in the past.
    """
    if not (principal.has_claim("loyaltyTier") or principal.has_claim("loyaltyNumber")):
        return False

    cutoff = one_month_before(now or datetime.now(timezone.utc))
    for value in principal.values("loyaltySince"):
        since = _parse_date(value)
        if since is not None and cutoff >= since:
            return True
    return False


POLICIES: Dict[str, Callable[[Principal, AppRolesSettings], bool]] = {
    COMMERCIAL_ONLY: commercial_only,
    EXCLUSIVE_DEMOS_ONLY: exclusive_demos_only,
    LOYALTY_ACCESS: loyalty_access,
}


def evaluate_policies(principal: Principal, roles: AppRolesSettings) -> Dict[str, bool]:
    return {name: policy(principal, roles) for name, policy in POLICIES.items()}


def require_policy(name: str):
    """
    FastAPI dependency factory enforcing a named policy.

    Usage in routes:
        @router.get("/exclusive", dependencies=[Depends(require_policy("ExclusiveDemosOnly"))])

    Raises:
        KeyError: If the policy name is unknown
    """
    policy = POLICIES[name]

    async def dependency(
        principal: Principal = Depends(require_principal),
        state=Depends(get_portal_state),
    ) -> Principal:
        if not policy(principal, state.settings.APP_ROLES):
            logger.info("Policy denied", extra={"policy": name, "oid": principal.object_id})
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied by policy {name}",
            )
        return principal

    return dependency
