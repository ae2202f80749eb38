"""
データモデルモジュール (Data Models Module)

セッション、通話詳細記録 (XDR)、エクスポート期間、実行結果のデータモデルを定義します。
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


# 課金サービスの運用タイムゾーン (UTC+6)
BILLING_TIMEZONE = timezone(timedelta(hours=6))

# PortaOne が受け付ける日時フォーマット
BILLING_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

SESSION_LEASE = timedelta(minutes=25)


class RecordDecodeError(ValueError):
    """XDR の必須フィールドが欠落または型不正の場合の例外"""
    pass


@dataclass
class Session:
    """
    PortaOne セッション

    ログインで取得したトークンと、その有効期限を保持します。

    Attributes:
        token: セッション ID
        created_at: 取得日時
        lease: 有効期間 (25分)
    """
    token: str
    created_at: datetime
    lease: timedelta = SESSION_LEASE

    @property
    def expires_at(self) -> datetime:
        return self.created_at + self.lease

    def is_alive(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class ExportWindow:
    """
    エクスポート期間

    前日 00:00:00 から 23:59:59 (UTC+6) までの期間を表します。

    Attributes:
        start: 開始日時 (UTC+6)
        end: 終了日時 (UTC+6, 23:59:59 を含む)
    """
    start: datetime
    end: datetime

    @property
    def date_string(self) -> str:
        """アーカイブキーに使用する日付 (YYYY-MM-DD)"""
        return self.start.strftime("%Y-%m-%d")

    @property
    def from_date(self) -> str:
        return self.start.astimezone(BILLING_TIMEZONE).strftime(BILLING_DATETIME_FORMAT)

    @property
    def to_date(self) -> str:
        return self.end.astimezone(BILLING_TIMEZONE).strftime(BILLING_DATETIME_FORMAT)


@dataclass
class CallRecord:
    """
    通話詳細記録 (XDR)

    PortaOne の get_customer_xdrs が返す1件分のレコードです。
    バックアップ処理では i_xdr と接続日時のみを使用します。

    Attributes:
        i_xdr: XDR 識別子
        i_customer: 顧客 ID
        connect_time: 接続日時 (PortaOne 形式の文字列)
        raw: 受信した元データ
    """
    i_xdr: int
    i_customer: Optional[str] = None
    connect_time: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: Any) -> 'CallRecord':
        """
        PortaOne のレスポンス要素から CallRecord を生成

        Args:
            data: xdr_list の1要素

        Returns:
            CallRecord

        Raises:
            RecordDecodeError: i_xdr が欠落または整数でない場合
        """
        if not isinstance(data, dict):
            raise RecordDecodeError(f"XDR must be a JSON object, got {type(data).__name__}")

        i_xdr = data.get("i_xdr")
        # bool は int のサブクラスなので明示的に除外
        if isinstance(i_xdr, bool) or not isinstance(i_xdr, (int, str)):
            raise RecordDecodeError(f"XDR has missing or invalid i_xdr: {i_xdr!r}")
        if isinstance(i_xdr, str):
            if not i_xdr.isdigit():
                raise RecordDecodeError(f"XDR has non-numeric i_xdr: {i_xdr!r}")
            i_xdr = int(i_xdr)

        connect_time = data.get("connect_time")
        if connect_time is not None and not isinstance(connect_time, str):
            raise RecordDecodeError(f"XDR {i_xdr} has invalid connect_time: {connect_time!r}")

        i_customer = data.get("i_customer")
        return cls(
            i_xdr=i_xdr,
            i_customer=str(i_customer) if i_customer is not None else None,
            connect_time=connect_time,
            raw=data,
        )


@dataclass
class BackupRunReport:
    """
    バックアップ実行結果

    1回の実行の件数を集計します。ログ出力とステータス確認のために使用され、
    スケジューラーへの成否通知には使用しません。
    """
    window_date: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    customers_total: int = 0
    customers_failed: int = 0
    records_listed: int = 0
    records_exported: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    acknowledge_failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window_date": self.window_date,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "customers_total": self.customers_total,
            "customers_failed": self.customers_failed,
            "records_listed": self.records_listed,
            "records_exported": self.records_exported,
            "records_skipped": self.records_skipped,
            "records_failed": self.records_failed,
            "acknowledge_failures": self.acknowledge_failures,
        }
