"""Per-tier fan-out quotas."""

from dataclasses import dataclass
from typing import Sequence, TypeVar

from app.models.tenant import PlanTier

T = TypeVar("T")
P = TypeVar("P")


@dataclass(frozen=True)
class TierQuota:
    prompts_per_day: int
    providers_per_prompt: int

    @property
    def max_tasks(self) -> int:
        return self.prompts_per_day * self.providers_per_prompt


TIER_QUOTAS: dict[PlanTier, TierQuota] = {
    PlanTier.FREE: TierQuota(prompts_per_day=10, providers_per_prompt=2),
    PlanTier.PRO: TierQuota(prompts_per_day=50, providers_per_prompt=3),
    PlanTier.ENTERPRISE: TierQuota(prompts_per_day=200, providers_per_prompt=5),
}


def get_quota(tier: str | PlanTier | None) -> TierQuota:
    """Quota for a tier; unknown or missing tiers get the free quota."""
    try:
        return TIER_QUOTAS[PlanTier(tier)]
    except ValueError:
        return TIER_QUOTAS[PlanTier.FREE]


def clamp_fan_out(
    prompts: Sequence[T],
    providers: Sequence[P],
    quota: TierQuota,
) -> tuple[list[T], list[P]]:
    """
    Clamp prompts and providers to the tier quota.

    Inputs must already be in a stable order (prompts by creation, providers by
    priority); the first N of each are kept.
    """
    return list(prompts[: quota.prompts_per_day]), list(providers[: quota.providers_per_prompt])
