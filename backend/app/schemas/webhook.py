"""CloudPayments Webhook ペイロード

フォーム/JSONから得たフラットな dict を、type ごとの閉じた型に変換する。
ハンドラは変換済みのイベントだけを受け取る。
"""
import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

# 応答コード
CODE_OK = 0
CODE_MISSING_ACCOUNT = 10
CODE_AMOUNT_MISMATCH = 12
CODE_REJECTED = 13

WEBHOOK_TYPES = ("check", "pay", "fail", "recurrent", "cancel")
RECURRENT_STATUSES = ("Active", "PastDue", "Cancelled", "Rejected", "Expired")


class WebhookParseError(Exception):
    pass


def _blank_to_none(value):
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, str) and not value.strip():
        return None
    return value


class WebhookData(BaseModel):
    """Data フィールド (チェックアウト時にウィジェットへ渡したJSON文字列)"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    plan_name: Optional[str] = Field(default=None, alias="planName")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    is_trial: bool = Field(default=False, alias="isTrial")

    @field_validator("is_trial", mode="before")
    @classmethod
    def _strict_true(cls, v):
        # JSON の true / 文字列 "true" のみトライアル扱い
        return v is True or v == "true"


class _WebhookEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    account_id: Optional[str] = Field(default=None, alias="AccountId")

    @field_validator("account_id", mode="before")
    @classmethod
    def _normalize_account(cls, v):
        return _blank_to_none(v)

    @property
    def user_id(self) -> Optional[int]:
        """AccountId をユーザーIDとして解釈 (数値でなければNone)"""
        if self.account_id is None:
            return None
        try:
            return int(self.account_id)
        except ValueError:
            return None


class _PaymentEvent(_WebhookEvent):
    transaction_id: Optional[str] = Field(default=None, alias="TransactionId")
    amount: Decimal = Field(default=Decimal("0"), alias="Amount")
    currency: str = Field(default="RUB", alias="Currency")
    subscription_id: Optional[str] = Field(default=None, alias="SubscriptionId")
    invoice_id: Optional[str] = Field(default=None, alias="InvoiceId")
    token: Optional[str] = Field(default=None, alias="Token")
    card_type: Optional[str] = Field(default=None, alias="CardType")
    card_last_four: Optional[str] = Field(default=None, alias="CardLastFour")
    email: Optional[str] = Field(default=None, alias="Email")
    test_mode: bool = Field(default=False, alias="TestMode")
    data: WebhookData = Field(default_factory=WebhookData, alias="Data")

    @field_validator(
        "transaction_id", "subscription_id", "invoice_id", "token", "card_type", "card_last_four", "email",
        mode="before",
    )
    @classmethod
    def _normalize_optional(cls, v):
        return _blank_to_none(v)

    @field_validator("currency", mode="before")
    @classmethod
    def _default_currency(cls, v):
        return v or "RUB"

    @field_validator("test_mode", mode="before")
    @classmethod
    def _parse_test_mode(cls, v):
        if isinstance(v, str):
            return v.lower() in ("true", "1")
        return bool(v)

    @field_validator("data", mode="before")
    @classmethod
    def _parse_data(cls, v):
        # 壊れたJSONは「Dataなし」として扱う
        if v is None or v == "":
            return {}
        if isinstance(v, str):
            try:
                v = json.loads(v)
            except ValueError:
                return {}
        return v if isinstance(v, dict) else {}

    @property
    def card_mask(self) -> Optional[str]:
        if not self.card_last_four:
            return None
        return f"{self.card_type or 'Card'} ****{self.card_last_four}"


class CheckEvent(_PaymentEvent):
    kind: Literal["check"] = "check"


class PayEvent(_PaymentEvent):
    kind: Literal["pay"] = "pay"


class FailEvent(_PaymentEvent):
    kind: Literal["fail"] = "fail"
    reason: Optional[str] = Field(default=None, alias="Reason")
    reason_code: Optional[int] = Field(default=None, alias="ReasonCode")

    @field_validator("reason", "reason_code", mode="before")
    @classmethod
    def _normalize_reason(cls, v):
        return _blank_to_none(v)

    @property
    def failure_reason(self) -> str:
        return f"{self.reason or 'Unknown'} (code: {self.reason_code if self.reason_code is not None else 'n/a'})"


class RecurrentEvent(_WebhookEvent):
    kind: Literal["recurrent"] = "recurrent"
    id: str = Field(alias="Id", min_length=1)
    status: str = Field(alias="Status", min_length=1)
    amount: Optional[Decimal] = Field(default=None, alias="Amount")
    currency: Optional[str] = Field(default=None, alias="Currency")
    successful_transactions_number: int = Field(default=0, alias="SuccessfulTransactionsNumber")
    failed_transactions_number: int = Field(default=0, alias="FailedTransactionsNumber")

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, v):
        return _blank_to_none(v)

    @field_validator("amount", "currency", mode="before")
    @classmethod
    def _normalize_optional(cls, v):
        return None if v == "" else v

    @field_validator("successful_transactions_number", "failed_transactions_number", mode="before")
    @classmethod
    def _default_zero(cls, v):
        return 0 if v in (None, "") else v


class CancelEvent(_WebhookEvent):
    kind: Literal["cancel"] = "cancel"
    id: Optional[str] = Field(default=None, alias="Id")
    subscription_id: Optional[str] = Field(default=None, alias="SubscriptionId")
    transaction_id: Optional[str] = Field(default=None, alias="TransactionId")

    @field_validator("id", "subscription_id", "transaction_id", mode="before")
    @classmethod
    def _normalize_optional(cls, v):
        return _blank_to_none(v)

    @property
    def external_subscription_id(self) -> Optional[str]:
        return self.id or self.subscription_id


WebhookEvent = Annotated[
    Union[CheckEvent, PayEvent, FailEvent, RecurrentEvent, CancelEvent],
    Field(discriminator="kind"),
]

_event_adapter = TypeAdapter(WebhookEvent)


def parse_webhook_event(kind: str, fields: dict):
    """type クエリとフラットなペイロードからイベントを生成。不正なら WebhookParseError"""
    if kind not in WEBHOOK_TYPES:
        raise WebhookParseError(f"Unknown webhook type: {kind}")
    try:
        return _event_adapter.validate_python({**fields, "kind": kind})
    except ValidationError as e:
        raise WebhookParseError(f"Invalid {kind} payload: {e.error_count()} error(s)") from e


# =========================================================
# ハンドラ結果
# =========================================================

@dataclass(frozen=True)
class Ok:
    code: int = CODE_OK


@dataclass(frozen=True)
class Reject:
    code: int
    reason: str


WebhookResult = Union[Ok, Reject]
