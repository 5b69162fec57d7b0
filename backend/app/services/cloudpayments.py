"""CloudPayments API操作サービス (HTTP Basic認証: Public ID / API Secret)"""
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import Any, Optional

import httpx

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

# 請求期間 → CloudPayments の Interval / Period
_INTERVALS = {
    "daily": ("Day", 1),
    "weekly": ("Week", 1),
    "monthly": ("Month", 1),
    "annual": ("Month", 12),
}


class CloudPaymentsError(Exception):
    """API呼び出し失敗 (HTTPエラー or Success=false)"""

    def __init__(self, endpoint: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"CloudPayments API error ({endpoint}): {message}")
        self.endpoint = endpoint
        self.status_code = status_code


def to_recurrent_interval(billing_period: str, billing_period_count: int = 1) -> tuple[str, int]:
    """請求期間を定期課金の (Interval, Period) に変換"""
    if billing_period not in _INTERVALS:
        raise ValueError(f"Unknown billing period: {billing_period}")
    interval, multiplier = _INTERVALS[billing_period]
    return interval, multiplier * billing_period_count


def _money(value: Decimal | int | float) -> float:
    return float(value)


class CloudPaymentsClient:
    """
    CloudPayments REST API クライアント

    全エンドポイントが POST + JSON で {Success, Message, Model} を返す。
    Success=false は CloudPaymentsError として送出する。
    """

    def __init__(
        self,
        public_id: str,
        api_secret: str,
        base_url: str = "https://api.cloudpayments.ru",
        timeout: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._client = httpx.Client(
            base_url=base_url,
            auth=(public_id, api_secret),
            timeout=timeout,
            transport=transport,
        )

    def close(self):
        self._client.close()

    def _request(self, endpoint: str, body: dict) -> Any:
        payload = {k: v for k, v in body.items() if v is not None}
        try:
            response = self._client.post(endpoint, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"CloudPayments APIエラー: {endpoint} status={e.response.status_code}")
            raise CloudPaymentsError(endpoint, f"HTTP {e.response.status_code}", e.response.status_code) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"CloudPayments API通信失敗: {endpoint} - {e}")
            raise CloudPaymentsError(endpoint, str(e)) from e

        if not data.get("Success"):
            message = data.get("Message") or "request was not successful"
            logger.error(f"CloudPayments API失敗応答: {endpoint} - {message}")
            raise CloudPaymentsError(endpoint, message, response.status_code)
        return data.get("Model")

    # --- 定期課金 ---

    def create_subscription(
        self,
        token: str,
        account_id: str,
        description: str,
        amount: Decimal,
        currency: str,
        start_date: datetime,
        interval: str,
        period: int,
        email: Optional[str] = None,
        require_confirmation: bool = False,
        max_periods: Optional[int] = None,
    ) -> dict:
        """カードトークンで定期課金を作成。戻り値は購読モデル (Id を含む)"""
        model = self._request("/subscriptions/create", {
            "Token": token,
            "AccountId": account_id,
            "Description": description,
            "Email": email,
            "Amount": _money(amount),
            "Currency": currency,
            "RequireConfirmation": require_confirmation,
            "StartDate": start_date.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "Interval": interval,
            "Period": period,
            "MaxPeriods": max_periods,
        })
        logger.info(f"CloudPayments定期課金作成: account={account_id}, id={model.get('Id')}")
        return model

    def get_subscription(self, subscription_id: str) -> dict:
        return self._request("/subscriptions/get", {"Id": subscription_id})

    def find_subscriptions(self, account_id: str) -> list[dict]:
        return self._request("/subscriptions/find", {"accountId": account_id}) or []

    def cancel_subscription(self, subscription_id: str) -> None:
        self._request("/subscriptions/cancel", {"Id": subscription_id})
        logger.info(f"CloudPayments定期課金キャンセル: id={subscription_id}")

    # --- 決済 ---

    def void_payment(self, transaction_id: str) -> None:
        """認証済み (未確定) 決済の取り消し。トライアルの保留額解放に使う"""
        self._request("/payments/void", {"TransactionId": int(transaction_id)})
        logger.info(f"CloudPayments決済取消: transaction_id={transaction_id}")


@lru_cache
def get_cloudpayments_client() -> CloudPaymentsClient:
    """設定値からクライアントを生成 (プロセス内で共有)"""
    return CloudPaymentsClient(
        public_id=settings.CLOUDPAYMENTS_PUBLIC_ID,
        api_secret=settings.CLOUDPAYMENTS_API_SECRET,
        base_url=settings.CLOUDPAYMENTS_API_URL,
        timeout=settings.CLOUDPAYMENTS_TIMEOUT_SECONDS,
    )
