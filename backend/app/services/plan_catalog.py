"""プランカタログ: 起動時に一度だけ読み込み、以後は不変の設定として各処理に注入する"""
import json
from decimal import Decimal
from pathlib import Path
from types import MappingProxyType
from typing import Iterator, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.core.logging import get_logger

logger = get_logger(__name__)


class PlanPrice(BaseModel):
    model_config = ConfigDict(frozen=True)

    RUB: Decimal
    USD: Decimal


class PlanTier(BaseModel):
    """カタログの1プラン"""
    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str
    display_name_ru: Optional[str] = None
    billing_period: str = Field(pattern="^(daily|weekly|monthly|annual)$")
    billing_period_count: int = Field(default=1, ge=1)
    token_quota: int = Field(ge=0)
    features: dict = Field(default_factory=dict)
    price: PlanPrice
    is_tester_plan: bool = False
    is_free_plan: bool = False

    def price_in(self, currency: Optional[str]) -> Decimal:
        """通貨別価格 (RUB以外はUSD扱い)"""
        return self.price.RUB if currency == "RUB" else self.price.USD

    @property
    def is_free_tester_plan(self) -> bool:
        """課金対象外のテスタープラン"""
        return self.is_tester_plan and self.price.RUB == 0


DEFAULT_TIERS: tuple[dict, ...] = (
    {
        "name": "free",
        "display_name": "Free Plan",
        "display_name_ru": "Бесплатный план",
        "billing_period": "daily",
        "token_quota": 35_000,
        "features": {"maxMessagesPerPeriod": 10, "hasReasoningModels": False, "maxFileSize": 2 * 1024 * 1024},
        "price": {"RUB": 0, "USD": 0},
        "is_free_plan": True,
    },
    {
        "name": "tester",
        "display_name": "Tester Plan [Daily, Free]",
        "billing_period": "daily",
        "token_quota": 200_000,
        "features": {"maxMessagesPerPeriod": 100, "hasReasoningModels": True, "maxFileSize": 5 * 1024 * 1024},
        "price": {"RUB": 0, "USD": 0},
        "is_tester_plan": True,
    },
    {
        "name": "tester_paid",
        "display_name": "Tester Plan [Daily, Paid]",
        "billing_period": "daily",
        "token_quota": 200_000,
        "features": {"maxMessagesPerPeriod": 100, "hasReasoningModels": True, "maxFileSize": 5 * 1024 * 1024},
        "price": {"RUB": 5, "USD": "0.05"},
        "is_tester_plan": True,
    },
    {
        "name": "basic_monthly",
        "display_name": "Basic Monthly Plan",
        "display_name_ru": "Базовый месячный план",
        "billing_period": "monthly",
        "token_quota": 3_000_000,
        "features": {"maxMessagesPerPeriod": 1500, "hasReasoningModels": True, "maxFileSize": 10 * 1024 * 1024},
        "price": {"RUB": 1999, "USD": "19.99"},
    },
    {
        "name": "basic_quarterly",
        "display_name": "Basic Quarterly Plan",
        "display_name_ru": "Базовый квартальный план",
        "billing_period": "monthly",
        "billing_period_count": 3,
        "token_quota": 9_000_000,
        "features": {"maxMessagesPerPeriod": 4500, "hasReasoningModels": True, "maxFileSize": 10 * 1024 * 1024},
        "price": {"RUB": 4999, "USD": "49.99"},
    },
    {
        "name": "basic_annual",
        "display_name": "Basic Annual Plan",
        "display_name_ru": "Базовый годовой план",
        "billing_period": "annual",
        "token_quota": 36_000_000,
        "features": {"maxMessagesPerPeriod": 18_000, "hasReasoningModels": True, "hasPrioritySupport": True},
        "price": {"RUB": 14_999, "USD": "149.99"},
    },
)


class PlanCatalog(Mapping[str, PlanTier]):
    """プラン名 → PlanTier の読み取り専用マップ"""

    def __init__(self, tiers: Mapping[str, PlanTier], free_plan_name: str = "free"):
        self._tiers = MappingProxyType(dict(tiers))
        if free_plan_name not in self._tiers:
            raise ValueError(f"free plan '{free_plan_name}' is not in the catalog")
        self._free_plan_name = free_plan_name

    def __getitem__(self, name: str) -> PlanTier:
        return self._tiers[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tiers)

    def __len__(self) -> int:
        return len(self._tiers)

    @property
    def free_plan_name(self) -> str:
        return self._free_plan_name

    def free_tier(self) -> PlanTier:
        return self._tiers[self._free_plan_name]

    def production_tiers(self) -> list[PlanTier]:
        """テスター・無料以外の販売プラン"""
        return [t for t in self._tiers.values() if not t.is_tester_plan and not t.is_free_plan]


def build_catalog(raw_tiers, free_plan_name: str = "free") -> PlanCatalog:
    tiers = {}
    for raw in raw_tiers:
        tier = PlanTier.model_validate(raw)
        if tier.name in tiers:
            raise ValueError(f"duplicate plan name in catalog: {tier.name}")
        tiers[tier.name] = tier
    return PlanCatalog(tiers, free_plan_name=free_plan_name)


def load_plan_catalog(path: Optional[str] = None, free_plan_name: str = "free") -> PlanCatalog:
    """カタログ読み込み: JSONファイル指定があればそれを、なければ組み込み定義を使用"""
    if path:
        raw_tiers = json.loads(Path(path).read_text(encoding="utf-8"))
        source = path
    else:
        raw_tiers = DEFAULT_TIERS
        source = "builtin"
    catalog = build_catalog(raw_tiers, free_plan_name=free_plan_name)
    logger.info(f"プランカタログ読み込み: source={source}, plans={len(catalog)}")
    return catalog
