from dataclasses import dataclass

from billing.models import AccessOverride, BillingAccount
from core.exceptions import AccessRestricted
from dunning.models import DunningLevel, DunningLog


@dataclass(frozen=True)
class AccessState:
    dunning_level: int
    is_blocked: bool
    is_read_only: bool

    @property
    def status(self) -> str:
        if self.is_blocked:
            return AccessOverride.BLOCKED.value
        if self.is_read_only:
            return AccessOverride.READ_ONLY.value
        return AccessOverride.NORMAL.value

    def as_dict(self) -> dict:
        return {
            "dunning_level": self.dunning_level,
            "is_blocked": self.is_blocked,
            "is_read_only": self.is_read_only,
            "status": self.status,
        }


def resolve_access_state(dunning_level: int, override: str | None = None) -> AccessState:
    """
    Maps a dunning level to the access gate. An explicit per-account override
    replaces the level mapping. Blocked always implies read-only.
    """
    if dunning_level is None or int(dunning_level) < 0:
        raise ValueError(f"Invalid dunning level: {dunning_level}")
    level = int(dunning_level)

    if override:
        if override not in AccessOverride.values:
            raise ValueError(f"Unknown access override: {override}")
        blocked = override == AccessOverride.BLOCKED
        read_only = blocked or override == AccessOverride.READ_ONLY
        return AccessState(dunning_level=level, is_blocked=blocked, is_read_only=read_only)

    blocked = level >= DunningLevel.BLOCKED
    read_only = blocked or level >= DunningLevel.READ_ONLY
    return AccessState(dunning_level=level, is_blocked=blocked, is_read_only=read_only)


def latest_dunning_level(account_id: int) -> int:
    latest = (
        DunningLog.objects.filter(account_id=account_id, reversed_at__isnull=True)
        .order_by("-executed_at", "-id")
        .values_list("dunning_level", flat=True)
        .first()
    )
    return int(latest or DunningLevel.NONE)


def get_access_state(account_id: int) -> AccessState:
    override = (
        BillingAccount.objects.filter(pk=account_id)
        .values_list("access_override", flat=True)
        .get()
    )
    return resolve_access_state(latest_dunning_level(account_id), override)


def assert_write_allowed(account_id: int) -> AccessState:
    state = get_access_state(account_id)
    if state.is_read_only:
        raise AccessRestricted(
            f"Account {account_id} is {state.status}; writes are not allowed.",
            access_state=state,
        )
    return state
